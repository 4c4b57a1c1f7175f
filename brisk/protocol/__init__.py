"""Task message protocol: message types and content-type codecs."""

from brisk.protocol.codec import (
    JSON,
    PICKLE,
    YAML,
    decode,
    encode,
    register_content_type,
    supported_content_types,
)
from brisk.protocol.message import Envelope, TaskMessage

__all__ = [
    "JSON",
    "PICKLE",
    "YAML",
    "Envelope",
    "TaskMessage",
    "decode",
    "encode",
    "register_content_type",
    "supported_content_types",
]
