from fastapi import Request
from fastapi.responses import JSONResponse


class OnePassError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(OnePassError):
    status_code = 404


class InvalidCommand(OnePassError):
    status_code = 400


class MaintenanceMode(OnePassError):
    status_code = 503

    def __init__(self, message: str = "System is in maintenance mode."):
        super().__init__(message)


class SheetUnavailable(OnePassError):
    status_code = 502


class SyncConflictPending(OnePassError):
    status_code = 409

    def __init__(self, conflicts):
        super().__init__(f"{len(conflicts)} sync conflict(s) must be resolved before commit.")
        self.conflicts = conflicts


def register_error_handlers(app):
    @app.exception_handler(SyncConflictPending)
    async def sync_conflict(request: Request, exc: SyncConflictPending):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": exc.message,
                "conflicts": [c.as_dict() for c in exc.conflicts],
            },
        )

    @app.exception_handler(OnePassError)
    async def onepass_error(request: Request, exc: OnePassError):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})
