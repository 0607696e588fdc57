import logging
import os
import socket
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

FALLBACK_REPLICA_NAME = 'unknown-replica'


def resolve_holder_identity(configured: Optional[str] = None,
                            environ: Optional[Mapping[str, str]] = None) -> str:
    """
    Work out the name this process writes on the leases it holds.

    Priority: explicit configuration, HOSTNAME (set to the pod name on
    Kubernetes), COMPUTERNAME (Windows), the network host name, and finally
    a fixed fallback.

    Args:
        configured: Value of LOADER_REPLICA_NAME, if any
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Non-empty holder identity
    """
    env = os.environ if environ is None else environ

    if configured and configured.strip():
        return configured.strip()

    for variable in ('HOSTNAME', 'COMPUTERNAME'):
        value = env.get(variable)
        if value and value.strip():
            logger.debug(f"Using {variable} as replica name: {value.strip()}")
            return value.strip()

    try:
        hostname = socket.gethostname()
        if hostname and hostname.strip():
            return hostname.strip()
    except OSError as e:
        logger.warning(f"Failed to get local hostname: {e}")

    logger.warning(f"Could not detect replica name, using fallback: {FALLBACK_REPLICA_NAME}")
    return FALLBACK_REPLICA_NAME
