"""Run flags and the skip/process/retry decision applied before each detector call."""

from dataclasses import dataclass

from photo_indexer.records import SidecarRecord


@dataclass(frozen=True)
class RunPolicy:
    recurse: bool = False
    only_new: bool = False
    retry_failed: bool = False
    force: bool = False


def should_process(existing: SidecarRecord | None, policy: RunPolicy) -> bool:
    """
    Decide whether a file needs (re)processing; the first matching rule wins.

    - ``force`` always processes.
    - Without ``only_new`` every file is processed.
    - A file without a record is processed.
    - A failed or invalid record is processed only with ``retry_failed``.
    - A valid record is skipped.

    Validity is decided by the record's kind (see ``SidecarRecord.is_valid``).

    Examples:
        >>> should_process(None, RunPolicy(only_new=True))
        True
        >>> from photo_indexer.records import ObjectsRecord
        >>> should_process(ObjectsRecord(success=True), RunPolicy(only_new=True))
        False

    """
    if policy.force or not policy.only_new or existing is None:
        return True
    if existing.is_valid():
        return False
    return policy.retry_failed
