"""SDP codec filtering.

Rewrites a session description so that only the codecs a policy allows are
offered. setCodecPreferences() is unreliable across implementations, so the
codecs are removed from the SDP text itself: every payload type of a
disallowed codec is dropped, together with the retransmission (rtx) payload
types that depend on it.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from screenshare.errors import MalformedDescriptionError

logger = logging.getLogger(__name__)

CRLF = "\r\n"

RTPMAP_PREFIX = "a=rtpmap:"
RTCP_FB_PREFIX = "a=rtcp-fb:"
FMTP_PREFIX = "a=fmtp:"
MEDIA_PREFIX = "m="

# m=<media> <port> <proto> <fmt> ...
MEDIA_HEADER_FIELDS = 3


class RecordKind(Enum):
    """Kind of an SDP record, as far as codec filtering is concerned."""

    MEDIA = "media"
    RTPMAP = "rtpmap"
    RTCP_FB = "rtcp-fb"
    FMTP = "fmtp"
    OTHER = "other"


@dataclass(frozen=True)
class CodecRecord:
    """Codec mapping from an a=rtpmap record."""

    payload_type: str
    codec: str
    params: str  # clock rate and optional channel count, e.g. "90000"


@dataclass(frozen=True)
class DependencyRecord:
    """Retransmission dependency from an a=fmtp record (apt=<pt>)."""

    payload_type: str
    associated: str


@dataclass(frozen=True)
class CodecPolicy:
    """Named set of codecs to strip from offers."""

    name: str
    disallowed: frozenset[str]


H264_ONLY = CodecPolicy(
    name="h264-only",
    disallowed=frozenset({"VP8", "VP9", "AV1", "H265"}),
)

POLICIES = {H264_ONLY.name: H264_ONLY}


def classify(record: str) -> RecordKind:
    """Return the kind of an SDP record."""
    if record.startswith(RTPMAP_PREFIX):
        return RecordKind.RTPMAP
    if record.startswith(RTCP_FB_PREFIX):
        return RecordKind.RTCP_FB
    if record.startswith(FMTP_PREFIX):
        return RecordKind.FMTP
    if record.startswith(MEDIA_PREFIX):
        return RecordKind.MEDIA
    return RecordKind.OTHER


def split_records(sdp: str) -> list[str]:
    """Split SDP text into records.

    Records are CRLF terminated; bare LF input is accepted as well.
    """
    return sdp.split(CRLF) if CRLF in sdp else sdp.split("\n")


def _leading_payload_type(record: str) -> str:
    """Payload type right after the attribute name (a=<attr>:<pt> ...)."""
    _, _, value = record.partition(":")
    return value.split(" ")[0]


def parse_codec_record(record: str) -> CodecRecord:
    """Parse an a=rtpmap record.

    Args:
        record: Record starting with "a=rtpmap:".

    Returns:
        Parsed codec mapping.

    Raises:
        MalformedDescriptionError: If the record has no codec token.
    """
    fields = record[len(RTPMAP_PREFIX):].split(" ")
    if len(fields) < 2 or not fields[0] or not fields[1]:
        raise MalformedDescriptionError(f"rtpmap record without codec: {record!r}")
    codec, _, params = fields[1].partition("/")
    if not codec:
        raise MalformedDescriptionError(f"rtpmap record without codec: {record!r}")
    return CodecRecord(payload_type=fields[0], codec=codec, params=params)


def parse_dependency_record(record: str) -> DependencyRecord | None:
    """Parse an a=fmtp record as a retransmission dependency.

    Args:
        record: Record starting with "a=fmtp:".

    Returns:
        The dependency, or None if the record carries no apt parameter.

    Raises:
        MalformedDescriptionError: If the record has no parameter token.
    """
    fields = record[len(FMTP_PREFIX):].split(" ", 1)
    if len(fields) < 2 or not fields[0]:
        raise MalformedDescriptionError(f"fmtp record without parameters: {record!r}")
    for param in fields[1].split(";"):
        key, sep, value = param.strip().partition("=")
        if sep and key == "apt" and value:
            return DependencyRecord(payload_type=fields[0], associated=value)
    return None


def removal_set(records: list[str], disallowed: frozenset[str] | set[str]) -> set[str]:
    """Compute the payload types to remove.

    The direct pass over rtpmap records completes before dependency records
    are looked at, so an rtx record placed before its codec still resolves.

    Args:
        records: SDP records.
        disallowed: Codec names to remove (exact, case-sensitive).

    Returns:
        Payload type ids of disallowed codecs and everything depending on them.
    """
    removed: set[str] = set()

    for record in records:
        if classify(record) is not RecordKind.RTPMAP:
            continue
        try:
            codec = parse_codec_record(record)
        except MalformedDescriptionError as e:
            logger.debug(f"Skipping record: {e}")
            continue
        if codec.codec in disallowed:
            removed.add(codec.payload_type)

    dependencies = []
    for record in records:
        if classify(record) is not RecordKind.FMTP:
            continue
        try:
            dependency = parse_dependency_record(record)
        except MalformedDescriptionError as e:
            logger.debug(f"Skipping record: {e}")
            continue
        if dependency is not None:
            dependencies.append(dependency)

    changed = True
    while changed:
        changed = False
        for dependency in dependencies:
            if dependency.associated in removed and dependency.payload_type not in removed:
                removed.add(dependency.payload_type)
                changed = True

    return removed


def _rewrite_media_header(record: str, removed: set[str]) -> str:
    fields = record.split(" ")
    if len(fields) < MEDIA_HEADER_FIELDS:
        logger.debug(f"Skipping record: media header too short: {record!r}")
        return record
    kept = [pt for pt in fields[MEDIA_HEADER_FIELDS:] if pt not in removed]
    return " ".join(fields[:MEDIA_HEADER_FIELDS] + kept)


def filter_codecs(sdp: str, disallowed: frozenset[str] | set[str]) -> str:
    """Remove codecs from an SDP.

    Drops rtpmap, rtcp-fb and fmtp records of removed payload types and takes
    those payload types out of the m= lines. A media section that loses every
    payload type keeps its header with an empty format list. All other
    records are kept verbatim and in order.

    Args:
        sdp: SDP text.
        disallowed: Codec names to remove.

    Returns:
        Rewritten SDP, every record CRLF terminated.
    """
    records = split_records(sdp)
    removed = removal_set(records, disallowed)

    out = []
    for record in records:
        kind = classify(record)
        if kind in (RecordKind.RTPMAP, RecordKind.RTCP_FB, RecordKind.FMTP):
            if _leading_payload_type(record) in removed:
                continue
        elif kind is RecordKind.MEDIA:
            record = _rewrite_media_header(record, removed)

        if record:
            out.append(record + CRLF)

    if removed:
        logger.debug(f"Removed payload types: {sorted(removed)}")
    return "".join(out)


def apply_policy(sdp: str, policy: CodecPolicy) -> str:
    """Filter an SDP with a named codec policy."""
    return filter_codecs(sdp, policy.disallowed)


def enforce_h264(sdp: str) -> str:
    """Force H264 by removing the other video codecs."""
    return apply_policy(sdp, H264_ONLY)


def list_codecs(sdp: str) -> list[CodecRecord]:
    """List codec mappings in an SDP, skipping malformed records."""
    codecs = []
    for record in split_records(sdp):
        if classify(record) is not RecordKind.RTPMAP:
            continue
        try:
            codecs.append(parse_codec_record(record))
        except MalformedDescriptionError:
            continue
    return codecs
