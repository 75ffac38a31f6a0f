class CronctlError(Exception):
    """Base class for cronctl errors."""


class JobValidationError(CronctlError, ValueError):
    """A job definition was rejected before reaching the store."""


class CronSyntaxError(JobValidationError):
    """Malformed cron expression."""


class JobNotFound(CronctlError, LookupError):
    pass


class StoreError(CronctlError, RuntimeError):
    """The job store could not complete an operation."""
