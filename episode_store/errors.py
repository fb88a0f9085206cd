from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class ProjectNotFoundError(ApiError):
    def __init__(self, project_id: str) -> None:
        super().__init__(
            code="PROJECT_NOT_FOUND",
            message=f"project not found: {project_id}",
            error_class="validation",
            retryable=False,
            http_status=404,
        )
        self.project_id = project_id


class StoreUnavailableError(ApiError):
    def __init__(self, message: str = "key/value store unavailable") -> None:
        super().__init__(
            code="STORE_UNAVAILABLE",
            message=message,
            error_class="transient",
            retryable=True,
            http_status=503,
        )


class MirrorPermissionError(ApiError):
    def __init__(self, path: str) -> None:
        super().__init__(
            code="MIRROR_PERMISSION_DENIED",
            message=f"mirror directory permission denied: {path}",
            error_class="security_sensitive",
            retryable=True,
            http_status=403,
        )
        self.path = path


class BundleFormatError(ApiError):
    def __init__(self, message: str) -> None:
        super().__init__(
            code="BUNDLE_INVALID",
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
        )
