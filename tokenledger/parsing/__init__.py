"""Session log parsing."""

from tokenledger.parsing.patch_log import (
    AppendAtPath,
    PathCursor,
    ReplaceRoot,
    SetAtPath,
    apply_record,
    decode_record,
    is_safe_segment,
    reconstruct_state,
)
from tokenledger.parsing.session_parser import (
    normalize_model_id,
    normalize_timestamp_ms,
    parse_session_content,
)
from tokenledger.parsing.token_estimator import TokenEstimator

__all__ = [
    "AppendAtPath",
    "PathCursor",
    "ReplaceRoot",
    "SetAtPath",
    "TokenEstimator",
    "apply_record",
    "decode_record",
    "is_safe_segment",
    "normalize_model_id",
    "normalize_timestamp_ms",
    "parse_session_content",
    "reconstruct_state",
]
