"""
kintone_backup.records - Record and field value model

Tagged field value variants parsed from raw kintone records.
"""

from kintone_backup.records.fields import (
    SYSTEM_FIELD_CODES,
    AttachmentValue,
    FieldType,
    FieldValue,
    FileRef,
    Record,
    find_attachment_fields,
    parse_field,
)

__all__ = [
    "SYSTEM_FIELD_CODES",
    "AttachmentValue",
    "FieldType",
    "FieldValue",
    "FileRef",
    "Record",
    "find_attachment_fields",
    "parse_field",
]
