STATE_DIR_NAME = ".team_runner"
CONFIG_FILE = "config.yaml"
RUNS_DIR = "runs"
ARCHIVE_DIR = "archive"
LOCK_FILE = ".lock"

STATUS_DIR_NAME = ".status"
STATUS_FILE_SUFFIX = ".status"
LOGS_DIR_NAME = "logs"
PLAN_FILE = "plan.yaml"
RUN_STATE_FILE = "run_state.yaml"
EVENTS_FILE = "events.jsonl"
REPORT_FILE = "report.json"
CANCEL_REQUEST_FILE = "cancel.request"

DEFAULT_POLL_INTERVAL_SECONDS = 2.0
DEFAULT_STALE_AFTER_SECONDS = 300
DEFAULT_MAX_DURATION_SECONDS = 3600
DEFAULT_TERMINATE_GRACE_SECONDS = 5
WINDOWS_LOCK_BYTES = 4096

# Environment handed to every launched worker so it can find its status file.
ENV_RUN_ID = "AGENT_TEAM_RUN_ID"
ENV_RUN_DIR = "AGENT_TEAM_RUN_DIR"
ENV_WORKER_ID = "AGENT_TEAM_WORKER_ID"
ENV_STATUS_FILE = "AGENT_TEAM_STATUS_FILE"

# Wire values written into `<worker>.status` files.
WIRE_STATUS_PENDING = "pending"
WIRE_STATUS_IN_PROGRESS = "in_progress"
WIRE_STATUS_COMPLETED = "completed"
WIRE_STATUS_ERROR = "error"

SKIP_NOT_REQUIRED = "not_required"
SKIP_DEPENDENCY_BLOCKED = "dependency_blocked"
SKIP_RUN_ABORTED = "run_aborted"
SKIP_CANCELLED = "cancelled"

EXIT_COMPLETED = 0
EXIT_ABORTED = 1
EXIT_ERROR = 2

# Default role template: (worker_id, predecessors). Position is the tie-break order.
DEFAULT_TEMPLATE: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("test_engineer", ()),
    ("db_architect", ("test_engineer",)),
    ("backend_dev", ("test_engineer", "db_architect")),
    ("frontend_dev", ("backend_dev",)),
    ("e2e_tester", ("backend_dev", "frontend_dev")),
    ("qa_reviewer", ("test_engineer", "db_architect", "backend_dev", "frontend_dev", "e2e_tester")),
)

# Display names used in checklist plans, normalized to worker ids.
WORKER_ALIASES = {
    "test": "test_engineer",
    "tests": "test_engineer",
    "tester": "test_engineer",
    "test_engineer": "test_engineer",
    "tdd": "test_engineer",
    "db": "db_architect",
    "database": "db_architect",
    "database_architect": "db_architect",
    "db_architect": "db_architect",
    "backend": "backend_dev",
    "backend_developer": "backend_dev",
    "backend_dev": "backend_dev",
    "api": "backend_dev",
    "frontend": "frontend_dev",
    "frontend_developer": "frontend_dev",
    "frontend_dev": "frontend_dev",
    "ui": "frontend_dev",
    "e2e": "e2e_tester",
    "e2e_tester": "e2e_tester",
    "e2e_test_engineer": "e2e_tester",
    "end_to_end_tester": "e2e_tester",
    "qa": "qa_reviewer",
    "qa_reviewer": "qa_reviewer",
    "qa_engineer": "qa_reviewer",
    "reviewer": "qa_reviewer",
}
