"""Typed records for each step of an upload transaction, stored in UploadJob.phase_log."""
from __future__ import annotations

from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from signage.device_api.status import MediaStatus


class _Phase(BaseModel):
    status_code: Optional[int] = None


class CreateResponse(_Phase):
    phase: Literal["create"] = "create"
    media_id: Optional[int] = None
    raw: Optional[str] = None


class TransferResponse(_Phase):
    phase: Literal["transfer"] = "transfer"
    etag: Optional[str] = None
    bytes_sent: int = 0


class FinalizeResponse(_Phase):
    phase: Literal["finalize"] = "finalize"
    attempt: int
    ok: bool
    raw: Optional[str] = None


class PollResponse(_Phase):
    phase: Literal["poll"] = "poll"
    poll_number: int
    raw_status: Optional[str] = None
    classified: MediaStatus = MediaStatus.UNKNOWN
    file_size: int = 0
    raw: Optional[str] = None


PhaseRecord = Annotated[
    Union[CreateResponse, TransferResponse, FinalizeResponse, PollResponse],
    Field(discriminator="phase"),
]

_PHASE_LIST = TypeAdapter(List[PhaseRecord])
_PHASE_ONE = TypeAdapter(PhaseRecord)


def parse_phase(data: Any) -> PhaseRecord:
    return _PHASE_ONE.validate_python(data)


def parse_phase_log(data: Optional[list]) -> List[PhaseRecord]:
    return _PHASE_LIST.validate_python(data or [])


def dump_phase(record: PhaseRecord) -> dict:
    return record.model_dump(mode="json")
