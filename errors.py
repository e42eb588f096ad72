from typing import Optional


class AppError(Exception):
    status_code = 500
    code = "internal_error"
    default_message = "Internal server error"

    def __init__(
        self, message: Optional[str] = None, details: Optional[list[dict]] = None
    ) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, object]:
        body: dict[str, object] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"
    default_message = "Invalid data"


class AuthenticationError(AppError):
    status_code = 401
    code = "unauthenticated"
    default_message = "You must be signed in to access this resource"


class AuthorizationError(AppError):
    status_code = 403
    code = "forbidden"
    default_message = "You do not have permission to perform this action"


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found"


class ConflictError(AppError):
    status_code = 409
    code = "conflict"
    default_message = "Resource already exists"


class InternalError(AppError):
    pass
