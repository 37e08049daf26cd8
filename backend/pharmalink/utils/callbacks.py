import inspect
import logging

logger = logging.getLogger(__name__)


async def invoke_callback(callback, *args) -> bool:
    """Call a subscriber callback that may be sync or async.

    A failing callback is logged and reported as False; it must not take down
    the loop that is delivering to it or to other subscribers.
    """
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
        return True
    except Exception:
        logger.exception("Subscriber callback %r failed", callback)
        return False
