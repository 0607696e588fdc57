# run.py
from signal_loader import create_app, db
from signal_loader.models import Job, Lease, ExecutionRecord, SignalRecord, ConfigPlan, ConfigValue

app = create_app()

@app.shell_context_processor
def make_shell_context():
    return {
        'db': db,
        'Job': Job,
        'Lease': Lease,
        'ExecutionRecord': ExecutionRecord,
        'SignalRecord': SignalRecord,
        'ConfigPlan': ConfigPlan,
        'ConfigValue': ConfigValue
    }
