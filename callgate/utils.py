import functools
import inspect

from loguru import logger


def log_call(func):
    """
    Trace a coroutine through loguru.

    Logs the bound arguments (minus self) on entry and a line on success.
    A failure is logged as a warning and re-raised untouched.
    """
    sig = inspect.signature(func)

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        func_name = func.__qualname__

        bound_args = sig.bind(*args, **kwargs)
        bound_args.apply_defaults()
        params = {k: v for k, v in bound_args.arguments.items() if k != "self"}

        logger.info(f"Entering {func_name} with params: {params}")

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            logger.warning(f"{func_name} raised {type(e).__name__}: {e}")
            raise
        logger.info(f"{func_name} succeeded")
        return result

    return wrapper
