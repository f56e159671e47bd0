"""Pure state rules for upload progress and session aggregation."""

from dataclasses import dataclass

from app.exceptions.storage import InvalidUploadStateError
from models.upload_progress import UploadStatus
from models.upload_session import SessionStatus

TERMINAL_STATES = frozenset({UploadStatus.COMPLETED, UploadStatus.FAILED, UploadStatus.CANCELLED})

ALLOWED_TRANSITIONS = {
    UploadStatus.PENDING: frozenset(
        {UploadStatus.UPLOADING, UploadStatus.COMPLETED, UploadStatus.FAILED, UploadStatus.CANCELLED}
    ),
    UploadStatus.UPLOADING: frozenset(
        {UploadStatus.UPLOADING, UploadStatus.COMPLETED, UploadStatus.FAILED, UploadStatus.CANCELLED}
    ),
    UploadStatus.COMPLETED: frozenset(),
    UploadStatus.FAILED: frozenset(),
    UploadStatus.CANCELLED: frozenset(),
}


def is_terminal(status: UploadStatus | str) -> bool:
    return UploadStatus(status) in TERMINAL_STATES


def can_transition(current: UploadStatus | str, target: UploadStatus | str) -> bool:
    return UploadStatus(target) in ALLOWED_TRANSITIONS[UploadStatus(current)]


def ensure_transition(current: UploadStatus | str, target: UploadStatus | str) -> UploadStatus:
    """Return ``target`` as an enum, or raise if the move is not allowed."""
    if not can_transition(current, target):
        raise InvalidUploadStateError(UploadStatus(current).value, UploadStatus(target).value)
    return UploadStatus(target)


@dataclass(frozen=True)
class SessionTotals:
    completed_files: int
    failed_files: int
    uploaded_size_bytes: int
    status: SessionStatus


def aggregate_session(
    total_files: int, statuses: list[UploadStatus | str], bytes_uploaded: list[int]
) -> SessionTotals:
    """Derive a session's counters and status from its progress rows.

    A session is COMPLETED once every file has completed and FAILED only when
    something failed and nothing completed. Anything else stays ACTIVE.
    """
    statuses = [UploadStatus(s) for s in statuses]
    completed = statuses.count(UploadStatus.COMPLETED)
    failed = statuses.count(UploadStatus.FAILED)

    if completed >= total_files:
        status = SessionStatus.COMPLETED
    elif failed > 0 and completed == 0:
        status = SessionStatus.FAILED
    else:
        status = SessionStatus.ACTIVE

    return SessionTotals(
        completed_files=completed,
        failed_files=failed,
        uploaded_size_bytes=sum(bytes_uploaded),
        status=status,
    )


def smoothed_speed(previous_bps: float, sample_bps: float, alpha: float) -> float:
    """Exponential moving average of upload speed; the first sample is taken as-is."""
    if previous_bps <= 0:
        return sample_bps
    return alpha * sample_bps + (1 - alpha) * previous_bps
