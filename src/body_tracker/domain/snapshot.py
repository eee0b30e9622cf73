"""
Snapshot document codec.

The replicated document is canonical JSON (sorted keys, UTF-8, no ASCII
escaping) so that two replicas holding the same data encode to identical
text. The remote store carries it base64-encoded.
"""

import base64
import binascii
import json
from collections.abc import Iterable, Mapping

from pydantic import ValidationError as PydanticValidationError

from body_tracker.domain.metrics import MetricEntry, Phase, RemoteSnapshot
from body_tracker.utils.exceptions import RemoteFormatError


def encode_document(entries: Mapping[str, MetricEntry], phases: Iterable[Phase]) -> str:
    """
    Serialize entries and phases to canonical JSON text.

    Args:
        entries: Date key to entry mapping.
        phases: Phases in stored order.

    Returns:
        JSON text.
    """
    document = {
        "entries": {key: entries[key].to_dict() for key in sorted(entries)},
        "phases": [phase.to_dict() for phase in phases],
    }
    return json.dumps(document, indent=2, sort_keys=True, ensure_ascii=False)


def encode_snapshot(snapshot: RemoteSnapshot) -> str:
    return encode_document(snapshot.entries, snapshot.phases)


def decode_document(text: str, version: str | None = None) -> RemoteSnapshot:
    """
    Parse JSON text into a snapshot.

    Args:
        text: JSON text of the document.
        version: Version token to attach.

    Returns:
        Parsed snapshot.

    Raises:
        RemoteFormatError: If the text is not a valid snapshot document.
    """
    try:
        data = json.loads(text) if text.strip() else {}
    except json.JSONDecodeError as e:
        raise RemoteFormatError(f"Snapshot is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise RemoteFormatError(f"Snapshot root must be an object, got {type(data).__name__}")

    try:
        snapshot = RemoteSnapshot(
            entries=data.get("entries") or {},
            phases=data.get("phases") or [],
        )
    except PydanticValidationError as e:
        raise RemoteFormatError(f"Snapshot does not match the document schema: {e}") from e

    snapshot.version = version
    return snapshot


def encode_content(text: str) -> str:
    """Base64-encode UTF-8 text for transport."""
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def decode_content(content: str) -> str:
    """
    Decode base64 transport content back to text.

    Line breaks inserted by the remote store are ignored.

    Raises:
        RemoteFormatError: If the content is not base64-encoded UTF-8.
    """
    try:
        return base64.b64decode("".join(content.split())).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise RemoteFormatError(f"Remote content is not base64 UTF-8: {e}") from e
