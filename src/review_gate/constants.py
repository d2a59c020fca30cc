STATE_DIR_NAME = ".review_gate"
CONFIG_FILE = "config.yaml"
BACKLOG_FILE = "backlog.yaml"
WORKFLOWS_DIR = "workflows"
REVIEWS_DIR = "reviews"
EVENTS_FILE = "events.jsonl"
WINDOWS_LOCK_BYTES = 4096

DEFAULT_MAX_WORKERS = 6
DEFAULT_TASK_TIMEOUT_SECONDS = 600
DEFAULT_POLL_INTERVAL_SECONDS = 0.05
DEFAULT_VERSION_ARGS = ("--version",)
DEFAULT_PROBE_TIMEOUT_SECONDS = 30

TASK_FAILURE_CATEGORY = "task-failure"

SNAPSHOT_ENV_VAR = "REVIEW_GATE_SNAPSHOT"
TASK_ENV_VAR = "REVIEW_GATE_TASK"
PROJECT_ENV_VAR = "REVIEW_GATE_PROJECT_DIR"

# Key under which the dispatcher hands each task its effective deadline.
DEADLINE_CONFIG_KEY = "deadline_seconds"

ERROR_TYPE_CONTEXT_UNAVAILABLE = "context_unavailable"
ERROR_TYPE_EXPLORATION_FAILED = "exploration_failed"
ERROR_TYPE_PHASE_FAILED = "phase_failed"
ERROR_TYPE_REVIEW_BLOCKED = "review_blocked"
ERROR_TYPE_REVISION_REQUESTED = "revision_requested"

# Presentation buckets; order is display order. Unlisted categories land in "other".
FINDING_BUCKETS: dict[str, frozenset[str]] = {
    "correctness": frozenset({TASK_FAILURE_CATEGORY, "error-handling", "logic", "bug", "correctness"}),
    "security": frozenset({"security", "secrets", "injection", "auth"}),
    "types": frozenset({"types", "typing", "type-safety"}),
    "tests": frozenset({"tests", "test-coverage", "coverage", "testing"}),
    "documentation": frozenset({"docs", "documentation", "comments"}),
    "style": frozenset({"style", "lint", "format", "naming", "simplification"}),
}
OTHER_BUCKET = "other"
