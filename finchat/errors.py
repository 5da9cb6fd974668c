"""
Error taxonomy shared by the stores, the orchestrator and the HTTP layer.

``message`` is always safe to show to a caller. Low-level details travel on
``__cause__`` (set with ``raise ... from err``) and in ``context``; both are
meant for logs only.
"""
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError


class AppError(Exception):
    code = "APP_ERROR"
    status = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status: Optional[int] = None,
                 meta: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status
        self.meta: Dict[str, Any] = dict(meta or {})
        self.context: List[str] = []

    def add_context(self, context: str, **meta) -> "AppError":
        # outermost context last; meta from inner frames wins on key clashes
        self.context.append(context)
        for key, value in meta.items():
            self.meta.setdefault(key, value)
        return self

    def describe(self) -> str:
        """Full internal description, for logging."""
        parts = list(reversed(self.context)) + [self.message]
        text = ": ".join(parts)
        if self.meta:
            text += f" {self.meta}"
        cause = self.__cause__
        if cause is not None:
            text += f" (caused by {type(cause).__name__}: {cause})"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {"error": {"code": self.code, "message": self.message}}


class ValidationError(AppError):
    code = "VALIDATION_ERROR"
    status = 400


class SignatureError(ValidationError):
    code = "SIGNATURE_INVALID"
    status = 401


class ExternalServiceError(AppError):
    code = "UPSTREAM_UNAVAILABLE"
    status = 502

    def __init__(self, service: str, reason: Optional[str] = None,
                 meta: Optional[Dict[str, Any]] = None):
        # callers always see the same message; which service and why is log-only
        super().__init__("upstream unavailable", meta=meta)
        self.service = service
        self.meta.setdefault("service", service)
        if reason:
            self.meta.setdefault("reason", reason)


class NotFoundOrUnauthorized(AppError):
    """Raised for both "does not exist" and "not yours"; callers cannot tell them apart."""
    code = "NOT_FOUND"
    status = 404

    def __init__(self, resource: str = "resource", meta: Optional[Dict[str, Any]] = None):
        super().__init__(f"{resource} not found", meta=meta)


class PersistenceError(AppError):
    code = "PERSISTENCE_ERROR"
    status = 503

    def __init__(self, message: str = "storage unavailable", meta: Optional[Dict[str, Any]] = None):
        super().__init__(message, meta=meta)


class ConfigurationError(AppError):
    code = "CONFIGURATION_ERROR"
    status = 500


def wrap_error(context: str, err: BaseException, **meta) -> AppError:
    """
    Attach operation context to an error crossing a component boundary.

    AppErrors keep their class (and therefore status) and gain context.
    Store failures become PersistenceError; anything else becomes a generic
    500. The original exception is chained as ``__cause__``.
    """
    if isinstance(err, AppError):
        return err.add_context(context, **meta)

    if isinstance(err, SQLAlchemyError):
        wrapped: AppError = PersistenceError(meta=meta)
    else:
        wrapped = AppError("internal error", meta=meta)
    wrapped.__cause__ = err
    return wrapped.add_context(context)
