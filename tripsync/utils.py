import functools
import inspect

from loguru import logger


def logged_job(func):
    """
    A decorator that logs job entry, exit, and exceptions.

    Features:
    - Works for plain functions and coroutine functions
    - Prints function name and parameters before execution
    - Logs exceptions with their type and re-raises them unchanged
    - Preserves function metadata and return values
    """

    def _entry(args, kwargs) -> str:
        sig = inspect.signature(func)
        bound_args = sig.bind(*args, **kwargs)
        bound_args.apply_defaults()
        params = {k: v for k, v in bound_args.arguments.items() if k != "self"}
        return f"Entering {func.__name__} with params: {params}"

    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            logger.debug(_entry(args, kwargs))
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(f"{func.__name__} failed: {type(e).__name__}: {e}")
                raise
            logger.debug(f"{func.__name__} done")
            return result

        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger.debug(_entry(args, kwargs))
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            logger.error(f"{func.__name__} failed: {type(e).__name__}: {e}")
            raise
        logger.debug(f"{func.__name__} done")
        return result

    return wrapper
