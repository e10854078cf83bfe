import os
import tempfile

os.environ.setdefault("LEDGER_DATA_DIR", tempfile.mkdtemp(prefix="ledger-tests-"))
os.environ.setdefault("LEDGER_SCHEDULER_ENABLED", "false")
os.environ.setdefault("LEDGER_TIMEZONE", "UTC")
