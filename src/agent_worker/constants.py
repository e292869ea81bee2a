LOG_DIR_NAME = ".agent-logs"
WORKTREES_DIR_SUFFIX = "-worktrees"
DEFAULT_BRANCH_PREFIX = "agent"
CONFIG_FILE_NAME = ".agent-worker.yaml"
ENV_PREFIX = "AGENT_WORKER_"

DEFAULT_TOOL_NAME = "Claude Code CLI"
DEFAULT_TOOL_COMMAND = (
    "claude",
    "-p",
    "--output-format",
    "stream-json",
    "--include-partial-messages",
    "--permission-mode",
    "acceptEdits",
    "--verbose",
)

DEFAULT_TOOL_TIMEOUT_SECONDS = 7200  # 2 hours
JOB_TIMEOUT_SAFETY_MARGIN_MINUTES = 1
MIN_JOB_TIMEOUT_MINUTES = 5
TERMINATION_GRACE_SECONDS = 2.0

DEFAULT_GIT_TIMEOUT_SECONDS = 30
GIT_VERSION_TIMEOUT_SECONDS = 5
WORKSPACE_MAX_RETRIES = 3
WORKSPACE_RETRY_BASE_DELAY_SECONDS = 1.0
STALE_WORKSPACE_SETTLE_SECONDS = 0.5

MAX_PROMPT_LENGTH = 500_000

# Substrings of git errors that indicate a lock or path collision worth retrying.
RETRYABLE_WORKSPACE_ERROR_MARKERS = (
    "already exists",
    "already locked",
    "unable to create",
    "could not lock",
)

STATUS_SETUP_STARTED = "setup_started"
STATUS_GIT_OPERATIONS = "git_operations"
STATUS_TOOL_STARTED = "tool_started"
STATUS_PROGRESS_UPDATE = "progress_update"
STATUS_JOB_COMPLETED = "job_completed"
STATUS_JOB_FAILED = "job_failed"
STATUS_ARTIFACT_STARTED = "artifact_generation_started"
STATUS_ARTIFACT_COMPLETE = "artifact_generation_complete"
STATUS_ARTIFACT_FAILED = "artifact_generation_failed"
