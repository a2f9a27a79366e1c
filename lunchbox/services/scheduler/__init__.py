from .dispatch_poller import DispatchPoller
from .scheduler_handle import SchedulerHandle

__all__ = ["DispatchPoller", "SchedulerHandle"]
