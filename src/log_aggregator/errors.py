"""Caller-visible failures of a log aggregation run."""

from typing import List, Optional

from models import KubeLogErrorCodes


class KubeLogError(Exception):
    error_code = KubeLogErrorCodes.INTERNAL_ERROR

    def __init__(self, message: str, diagnostics: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.diagnostics = list(diagnostics or [])


class SelectionError(KubeLogError):
    error_code = KubeLogErrorCodes.INVALID_SELECTION


class InvalidParameterError(KubeLogError):
    error_code = KubeLogErrorCodes.INVALID_PARAMETER


class OwnerResolutionError(KubeLogError):
    error_code = KubeLogErrorCodes.OWNER_NOT_RESOLVED


class NoPodsFoundError(KubeLogError):
    error_code = KubeLogErrorCodes.NO_PODS_FOUND


class LogFetchError(KubeLogError):
    error_code = KubeLogErrorCodes.LOG_FETCH_FAILED
