import json
from typing import Any, Dict, List, Optional

# Known Kubernetes API failure statuses with remediation hints
K8S_API_ERRORS: List[Dict[str, Any]] = [
    {
        "status": 401,
        "errorCode": "Unauthorized",
        "errorMessage": "The Kubernetes API rejected the credentials",
        "solution": "Check the kubeconfig user credentials or the in-cluster service account token.",
    },
    {
        "status": 403,
        "errorCode": "Forbidden",
        "errorMessage": "The current identity is not allowed to perform this request",
        "solution": "Grant get/list/watch on pods, pods/log and events (and read on the owner workload) via RBAC.",
    },
    {
        "status": 404,
        "errorCode": "NotFound",
        "errorMessage": "The requested resource does not exist",
        "solution": "Verify the namespace and resource name; the pod may have been deleted or rescheduled.",
    },
    {
        "status": 429,
        "errorCode": "TooManyRequests",
        "errorMessage": "The Kubernetes API server is throttling requests",
        "solution": "Reduce the number of selected pods or increase the poll interval.",
    },
]


class ClusterApiError(Exception):
    """A Kubernetes API failure with a readable message and remediation hint."""

    def __init__(self, status: Optional[int], reason: str, message: str, solution: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.reason = reason
        self.message = message
        self.solution = solution

    @classmethod
    def from_api_exception(cls, exc) -> "ClusterApiError":
        status = getattr(exc, "status", None)
        reason = getattr(exc, "reason", None) or "Unknown"
        message = api_exception_message(exc)
        solution = None
        for known in K8S_API_ERRORS:
            if known["status"] == status:
                solution = known["solution"]
                reason = known["errorCode"]
                break
        return cls(status, reason, message, solution)

    def __str__(self) -> str:
        text = f"{self.reason} ({self.status}): {self.message}" if self.status else self.message
        if self.solution:
            text += f" Hint: {self.solution}"
        return text


def api_exception_message(exc) -> str:
    """Extract the server supplied message from an ApiException body."""
    body = getattr(exc, "body", None)
    if body:
        try:
            data = json.loads(body)
            if isinstance(data, dict) and data.get("message"):
                return str(data["message"])
        except (TypeError, ValueError):
            text = body.decode("utf-8", "replace") if isinstance(body, bytes) else str(body)
            if text.strip():
                return text.strip()
    return getattr(exc, "reason", None) or str(exc)


def describe_exception(exc: BaseException) -> str:
    if isinstance(exc, ClusterApiError):
        return str(exc)
    if getattr(exc, "status", None) is not None and hasattr(exc, "body"):
        return str(ClusterApiError.from_api_exception(exc))
    return f"{type(exc).__name__}: {exc}"
