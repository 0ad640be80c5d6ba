"""Wire contract identifiers for the duplex terminal channel."""

HBENCH_VERSION = "0.1.0"
CONFIG_SCHEMA_V1 = "config.v1"

MSG_INPUT = "input"
MSG_RESIZE = "resize"
MSG_SETUP = "setup"
MSG_USE_EXISTING = "use-existing"
MSG_WIPE = "wipe"

MSG_OUTPUT = "output"
MSG_SETUP_STATUS = "setup-status"
MSG_WIPE_STATUS = "wipe-status"

STATUS_START = "start"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"

SETUP_MODE_EXISTING = "existing"

NO_WORKTREE_NOTICE = "No worktree configured. Run SETUP first."
MISSING_REPO_URL_MESSAGE = "Missing repository URL"
