"""
Error taxonomy shared by the service and router layers.

Services raise these; ``forum_api.main`` renders any ``ForumError`` as
``{"success": false, "message": ...}`` with the matching status code.

Every error except ``StoreFailure`` is raised before anything is written,
so "nothing happened" holds for all of them.  ``StoreFailure`` is raised
after the enclosing transaction has been rolled back, so it means the same
thing even though the failure happened mid-write.
"""


class ForumError(Exception):
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class BadRequest(ForumError):
    status_code = 400


class Unauthorized(ForumError):
    status_code = 401


class Forbidden(ForumError):
    status_code = 403


class NotFound(ForumError):
    status_code = 404


class Conflict(ForumError):
    status_code = 409


class StoreFailure(ForumError):
    status_code = 500
