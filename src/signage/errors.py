"""Structured error types shared across the publish pipeline."""
from __future__ import annotations

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base error. Every user-visible failure is an {errorCode, message, nextAction} triple."""

    default_code = "PIPELINE_ERROR"

    def __init__(
        self,
        msg: str,
        code: Optional[str] = None,
        next_action: Optional[str] = None,
        retryable: bool = False,
    ):
        super().__init__(msg)
        self.message = msg
        self.code = code or self.default_code
        self.next_action = next_action
        self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "errorCode": self.code,
            "message": self.message,
            "nextAction": self.next_action,
        }


class PreconditionError(PipelineError):
    """Input/precondition failure (missing asset, no canonical asset). Never retried."""

    default_code = "PRECONDITION_FAILED"


class MediaNotReadyError(PreconditionError):
    """Raised by the readiness gate when an asset may not be published yet."""

    default_code = "MEDIA_NOT_READY"

    def __init__(
        self,
        msg: str,
        status: str,
        asset_id: Optional[int] = None,
        next_action: str = "wait",
    ):
        super().__init__(msg, code=self.default_code, next_action=next_action)
        self.status = status
        self.asset_id = asset_id

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["status"] = self.status
        data["assetId"] = self.asset_id
        return data


class AssetSupersededError(PreconditionError):
    """The asset was replaced by a newer upload and must not be published."""

    default_code = "ASSET_SUPERSEDED"

    def __init__(self, msg: str, asset_id: int, superseded_by_id: Optional[int] = None):
        super().__init__(msg, code=self.default_code, next_action="publish_latest")
        self.asset_id = asset_id
        self.superseded_by_id = superseded_by_id

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["assetId"] = self.asset_id
        data["supersededById"] = self.superseded_by_id
        return data


class UploadAlreadyInProgressError(PipelineError):
    default_code = "UPLOAD_ALREADY_IN_PROGRESS"

    def __init__(self, msg: str, job_id: Optional[int] = None):
        super().__init__(msg, code=self.default_code, next_action="wait", retryable=True)
        self.job_id = job_id

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["jobId"] = self.job_id
        return data


class DeviceApiError(PipelineError):
    """A device API call failed. Transient when the network failed or the server answered 5xx/429."""

    default_code = "DEVICE_API_ERROR"

    def __init__(self, msg: str, code: Optional[str] = None, status_code: Optional[int] = None):
        transient = is_transient_status(status_code)
        super().__init__(
            msg,
            code=code,
            next_action="retry" if transient else "investigate",
            retryable=transient,
        )
        self.status_code = status_code


class LayoutForbiddenError(PipelineError):
    """A screen is still in layout mode where only playlist mode can show ads."""

    default_code = "LAYOUT_FORBIDDEN"

    def __init__(self, msg: str):
        super().__init__(f"[LAYOUT_FORBIDDEN] {msg}", code=self.default_code, next_action="repair_screen")


def is_transient_status(status_code: Optional[int]) -> bool:
    """Network failures (no status), 429 and 5xx are retried in place."""
    if status_code is None:
        return True
    return status_code == 429 or status_code >= 500


def guard_no_layout(source_type: Optional[str], context: str) -> None:
    if source_type == "layout":
        raise LayoutForbiddenError(
            f'{context}: source_type="layout" detected. Screens must run in playlist mode.'
        )
