# ftudp/events.py
import asyncio
import enum
import logging
from collections import defaultdict

logger = logging.getLogger("ftudp.events")


class ClientEvent(str, enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    AUTHENTICATED = "authenticated"
    ERROR = "error"
    UPLOAD_PROGRESS = "upload_progress"
    UPLOAD_COMPLETE = "upload_complete"
    DOWNLOAD_START = "download_start"
    DOWNLOAD_PROGRESS = "download_progress"
    DOWNLOAD_COMPLETE = "download_complete"


class EventBus:
    """
    Observer registry for client notifications.
    Callbacks take a single dict argument; coroutine callbacks are scheduled
    as tasks. A failing callback is logged and never reaches the emitter.
    """

    def __init__(self):
        self._subscribers = defaultdict(list)
        self._tasks = set()

    def subscribe(self, event, cb):
        if not callable(cb):
            raise TypeError("callback must be callable")
        self._subscribers[ClientEvent(event)].append(cb)
        return cb

    def unsubscribe(self, event, cb):
        try:
            self._subscribers[ClientEvent(event)].remove(cb)
        except ValueError:
            pass

    def emit(self, event, **payload):
        event = ClientEvent(event)
        for cb in list(self._subscribers[event]):
            try:
                res = cb(payload)
                if asyncio.iscoroutine(res):
                    task = asyncio.ensure_future(res)
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
            except Exception:
                logger.exception("%s subscriber %r failed", event.value, cb)

    def _task_done(self, task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("event subscriber task failed", exc_info=task.exception())
