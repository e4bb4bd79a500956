# User value: This file keeps queue names, statuses and progress checkpoints in one place for API and worker.
JOB_TYPE_DIGITIZATION = "process-digitization"

DEFAULT_QUEUE_NAME = "digitization"
DEFAULT_DLQ_NAME = "digitization-dlq"
DEAD_LETTER_JOB_TYPE = "dead-letter"

# Work record statuses
RECORD_STATUS_PENDING = "pending"
RECORD_STATUS_PROCESSING = "processing"
RECORD_STATUS_COMPLETED = "completed"
RECORD_STATUS_FAILED = "failed"

RECORD_STATUSES = (
    RECORD_STATUS_PENDING,
    RECORD_STATUS_PROCESSING,
    RECORD_STATUS_COMPLETED,
    RECORD_STATUS_FAILED,
)
TERMINAL_RECORD_STATUSES = frozenset({RECORD_STATUS_COMPLETED, RECORD_STATUS_FAILED})

# Job states
JOB_STATE_WAITING = "waiting"
JOB_STATE_DELAYED = "delayed"
JOB_STATE_ACTIVE = "active"
JOB_STATE_COMPLETED = "completed"
JOB_STATE_FAILED = "failed"


# Progress checkpoints
PROGRESS_PROCESSING = 5
PROGRESS_RECOGNIZED = 25
PROGRESS_TRANSLATED = 75
PROGRESS_PERSISTING = 95
PROGRESS_DONE = 100

# Retention, milliseconds
COMPLETED_RETENTION_MS = 24 * 3600 * 1000
COMPLETED_RETENTION_COUNT = 100
FAILED_RETENTION_MS = 7 * 24 * 3600 * 1000
DEAD_LETTER_RETENTION_MS = 30 * 24 * 3600 * 1000
