"""Error taxonomy shared by the scheduler and the check executors."""


class SchedulerError(Exception):
    """Base class for all scheduler errors."""


class ConfigurationError(SchedulerError):
    """Monitor or operator configuration is invalid; the check must not be retried."""


class TransientExecutionError(SchedulerError):
    """Navigation timeout, network failure or browser disconnect."""


class ResourceError(SchedulerError):
    """An auxiliary resource (artifact write, browser launch) failed."""


class InfrastructureError(SchedulerError):
    """The job broker could not be reached or initialized."""
