import os
import tempfile

# Keep test runs off the on-disk database and the background scheduler.
os.environ.setdefault("EXPENSES_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("EXPENSES_SCHEDULER_ENABLED", "0")
os.environ.setdefault(
    "EXPENSES_DATA_DIR", os.path.join(tempfile.gettempdir(), "recurring-tests")
)
