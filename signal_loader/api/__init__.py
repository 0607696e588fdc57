from flask import Blueprint

bp = Blueprint('api', __name__)

from signal_loader.api import routes  # noqa: E402,F401
