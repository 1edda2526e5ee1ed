import functools
import inspect
from fastapi import HTTPException

from src.utils.errors import InternalError
from src.utils.logger import api_logger


def _log_http_exception(he: HTTPException, handler_name: str):
    status = getattr(he, "status_code", None)
    detail = getattr(he, "detail", None)
    code = getattr(he, "code", None)
    if status and status >= 500:
        api_logger.exception(
            "%s raised (status=%s code=%s): %s", handler_name, status, code, detail
        )
    else:
        api_logger.warning(
            "%s rejected (status=%s code=%s): %s", handler_name, status, code, detail
        )


# -------------------------
# safe_handler decorator (sync & async aware)
# -------------------------
def safe_handler(default_detail: str = "Unexpected error"):
    """
    Decorator for order flow handlers:
    - HTTPException (including the OrderFlowError taxonomy) is logged and re-raised,
      WARNING for 4xx and ERROR with stack for 5xx
    - anything else is logged with its stack and converted to InternalError
      carrying ``default_detail`` so provider text never reaches the caller
    """

    def decorator(func):
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                try:
                    return await func(*args, **kwargs)
                except HTTPException as he:
                    _log_http_exception(he, func.__name__)
                    raise
                except Exception as e:
                    api_logger.exception("Unhandled exception in %s: %s", func.__name__, e)
                    raise InternalError(default_detail)

            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except HTTPException as he:
                _log_http_exception(he, func.__name__)
                raise
            except Exception as e:
                api_logger.exception("Unhandled exception in %s: %s", func.__name__, e)
                raise InternalError(default_detail)

        return sync_wrapper

    return decorator
