"""
Field value model for kintone records.

A raw kintone record maps field codes to ``{"type": ..., "value": ...}``
objects. This module parses those objects into explicit field value
variants so that cleaning, display and attachment discovery dispatch on
the variant instead of comparing type strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class FieldType(str, Enum):
    """kintone field types."""

    RECORD_NUMBER = "RECORD_NUMBER"
    ID = "__ID__"
    REVISION = "__REVISION__"
    CREATOR = "CREATOR"
    CREATED_TIME = "CREATED_TIME"
    MODIFIER = "MODIFIER"
    UPDATED_TIME = "UPDATED_TIME"
    STATUS = "STATUS"
    STATUS_ASSIGNEE = "STATUS_ASSIGNEE"
    CATEGORY = "CATEGORY"
    CALC = "CALC"
    SINGLE_LINE_TEXT = "SINGLE_LINE_TEXT"
    MULTI_LINE_TEXT = "MULTI_LINE_TEXT"
    RICH_TEXT = "RICH_TEXT"
    LINK = "LINK"
    NUMBER = "NUMBER"
    DATE = "DATE"
    TIME = "TIME"
    DATETIME = "DATETIME"
    RADIO_BUTTON = "RADIO_BUTTON"
    DROP_DOWN = "DROP_DOWN"
    CHECK_BOX = "CHECK_BOX"
    MULTI_SELECT = "MULTI_SELECT"
    USER_SELECT = "USER_SELECT"
    ORGANIZATION_SELECT = "ORGANIZATION_SELECT"
    GROUP_SELECT = "GROUP_SELECT"
    FILE = "FILE"
    SUBTABLE = "SUBTABLE"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Optional[str]) -> FieldType:
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


# Field codes the service manages itself; never sent back on restore
SYSTEM_FIELD_CODES = frozenset(
    {
        "RECORD_NUMBER",
        "__ID__",
        "__REVISION__",
        "CREATOR",
        "CREATED_TIME",
        "MODIFIER",
        "UPDATED_TIME",
        "STATUS",
        "STATUS_ASSIGNEE",
        "$id",
        "$revision",
    }
)

_SYSTEM_TYPES = {
    FieldType.RECORD_NUMBER,
    FieldType.ID,
    FieldType.REVISION,
    FieldType.CREATOR,
    FieldType.CREATED_TIME,
    FieldType.MODIFIER,
    FieldType.UPDATED_TIME,
    FieldType.STATUS,
    FieldType.STATUS_ASSIGNEE,
}
_TEXT_TYPES = {
    FieldType.SINGLE_LINE_TEXT,
    FieldType.MULTI_LINE_TEXT,
    FieldType.RICH_TEXT,
    FieldType.LINK,
}
_TEMPORAL_TYPES = {FieldType.DATE, FieldType.TIME, FieldType.DATETIME}
_CHOICE_TYPES = {FieldType.RADIO_BUTTON, FieldType.DROP_DOWN}
_MULTI_CHOICE_TYPES = {FieldType.CHECK_BOX, FieldType.MULTI_SELECT}
_ENTITY_TYPES = {
    FieldType.USER_SELECT,
    FieldType.ORGANIZATION_SELECT,
    FieldType.GROUP_SELECT,
}
_COMPUTED_TYPES = {FieldType.CALC, FieldType.CATEGORY}


@dataclass
class FieldValue:
    """Base class of all field value variants."""

    code: str
    type: FieldType

    read_only = False

    def to_payload(self) -> dict[str, Any]:
        """Return the ``{"value": ...}`` object used when writing records."""
        raise NotImplementedError

    def display(self) -> str:
        raise NotImplementedError


@dataclass
class SystemValue(FieldValue):
    """Record number, id, revision, creator/modifier, timestamps, status."""

    value: Any = None

    read_only = True

    def to_payload(self) -> dict[str, Any]:
        return {"value": self.value}

    def display(self) -> str:
        if isinstance(self.value, dict):
            return str(self.value.get("name") or self.value.get("code") or "")
        if isinstance(self.value, list):
            return ", ".join(
                str(v.get("name") or v.get("code")) if isinstance(v, dict) else str(v)
                for v in self.value
            )
        return "" if self.value is None else str(self.value)


@dataclass
class ComputedValue(FieldValue):
    """Calculated and category fields; the service derives them."""

    value: Any = None

    read_only = True

    def to_payload(self) -> dict[str, Any]:
        return {"value": self.value}

    def display(self) -> str:
        if isinstance(self.value, list):
            return ", ".join(str(v) for v in self.value)
        return "" if self.value is None else str(self.value)


@dataclass
class TextValue(FieldValue):
    value: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return {"value": self.value}

    def display(self) -> str:
        return self.value or ""


@dataclass
class NumberValue(FieldValue):
    """Numbers travel as strings to preserve precision."""

    value: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return {"value": self.value}

    def display(self) -> str:
        return self.value or ""


@dataclass
class TemporalValue(FieldValue):
    """DATE, TIME and DATETIME values in the service's ISO formats."""

    value: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return {"value": self.value}

    def display(self) -> str:
        return self.value or ""


@dataclass
class ChoiceValue(FieldValue):
    """Single selection (radio button, drop-down)."""

    value: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return {"value": self.value}

    def display(self) -> str:
        return self.value or ""


@dataclass
class MultiChoiceValue(FieldValue):
    """Multiple selection (check box, multi-select)."""

    values: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {"value": list(self.values)}

    def display(self) -> str:
        return ", ".join(self.values)


@dataclass
class EntityRefValue(FieldValue):
    """User, organization or group references ({"code", "name"} entries)."""

    entries: list[dict[str, Any]] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {"value": [{"code": entry.get("code")} for entry in self.entries]}

    def display(self) -> str:
        return ", ".join(
            str(entry.get("name") or entry.get("code") or "") for entry in self.entries
        )


@dataclass
class FileRef:
    """One attachment inside a FILE field."""

    file_key: str
    name: str
    content_type: Optional[str] = None
    size: Optional[int] = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> FileRef:
        size = data.get("size")
        return cls(
            file_key=str(data.get("fileKey", "")),
            name=str(data.get("name", "")),
            content_type=data.get("contentType"),
            size=int(size) if size not in (None, "") else None,
        )

    def to_api(self) -> dict[str, Any]:
        data: dict[str, Any] = {"fileKey": self.file_key, "name": self.name}
        if self.content_type is not None:
            data["contentType"] = self.content_type
        if self.size is not None:
            data["size"] = str(self.size)
        return data


@dataclass
class AttachmentValue(FieldValue):
    files: list[FileRef] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {"value": [f.to_api() for f in self.files]}

    def display(self) -> str:
        return ", ".join(f.name for f in self.files)


@dataclass
class SubtableRow:
    row_id: Optional[str]
    fields: dict[str, FieldValue] = field(default_factory=dict)


@dataclass
class SubtableValue(FieldValue):
    rows: list[SubtableRow] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        rows = []
        for row in self.rows:
            cells = {
                code: cell.to_payload()
                for code, cell in row.fields.items()
                if not cell.read_only
            }
            item: dict[str, Any] = {"value": cells}
            if row.row_id is not None:
                item["id"] = row.row_id
            rows.append(item)
        return {"value": rows}

    def display(self) -> str:
        return f"{len(self.rows)} row(s)"


@dataclass
class UnknownValue(FieldValue):
    """Field types this module does not know; passed through unchanged."""

    raw: Any = None

    def to_payload(self) -> dict[str, Any]:
        return {"value": self.raw}

    def display(self) -> str:
        return "" if self.raw is None else str(self.raw)


def parse_field(code: str, raw: Any) -> FieldValue:
    """
    Parse one raw ``{"type", "value"}`` object into its variant.

    Args:
        code: Field code
        raw: Raw field object from the API

    Returns:
        FieldValue variant matching the field type
    """
    if not isinstance(raw, dict):
        return UnknownValue(code, FieldType.UNKNOWN, raw=raw)

    field_type = FieldType.parse(raw.get("type"))
    value = raw.get("value")

    if field_type in _SYSTEM_TYPES:
        return SystemValue(code, field_type, value=value)
    if field_type in _COMPUTED_TYPES:
        return ComputedValue(code, field_type, value=value)
    if field_type in _TEXT_TYPES:
        return TextValue(code, field_type, value=value)
    if field_type is FieldType.NUMBER:
        return NumberValue(code, field_type, value=value)
    if field_type in _TEMPORAL_TYPES:
        return TemporalValue(code, field_type, value=value)
    if field_type in _CHOICE_TYPES:
        return ChoiceValue(code, field_type, value=value)
    if field_type in _MULTI_CHOICE_TYPES:
        return MultiChoiceValue(code, field_type, values=list(value or []))
    if field_type in _ENTITY_TYPES:
        return EntityRefValue(code, field_type, entries=list(value or []))
    if field_type is FieldType.FILE:
        return AttachmentValue(
            code, field_type, files=[FileRef.from_api(f) for f in value or []]
        )
    if field_type is FieldType.SUBTABLE:
        rows = [
            SubtableRow(
                row_id=row.get("id"),
                fields={
                    cell_code: parse_field(cell_code, cell)
                    for cell_code, cell in (row.get("value") or {}).items()
                },
            )
            for row in value or []
        ]
        return SubtableValue(code, field_type, rows=rows)

    return UnknownValue(code, field_type, raw=value)


class Record:
    """
    Read-only view over one raw kintone record.

    The raw dictionary is kept as captured; parsed field values are
    computed on demand.

    Usage:
        record = Record(raw)
        record.record_id            # "$id" value
        record.attachment_fields()  # codes of FILE fields
        payload = record.restore_payload()
    """

    def __init__(self, raw: dict[str, Any]):
        self.raw = raw

    def _value_of(self, code: str) -> Any:
        item = self.raw.get(code)
        if isinstance(item, dict):
            return item.get("value")
        return None

    @property
    def record_id(self) -> Optional[str]:
        value = self._value_of("$id")
        return str(value) if value not in (None, "") else None

    @property
    def revision(self) -> Optional[str]:
        value = self._value_of("$revision")
        return str(value) if value not in (None, "") else None

    def fields(self) -> dict[str, FieldValue]:
        return {code: parse_field(code, raw) for code, raw in self.raw.items()}

    def first_of_type(self, field_type: FieldType) -> Optional[FieldValue]:
        for field_value in self.fields().values():
            if field_value.type is field_type:
                return field_value
        return None

    def updated_time(self, field_code: Optional[str] = None) -> Optional[str]:
        """
        Return the record's updated-time value.

        Looks at ``field_code`` first, then at any UPDATED_TIME-typed field.
        """
        if field_code:
            value = self._value_of(field_code)
            if value:
                return str(value)
        updated = self.first_of_type(FieldType.UPDATED_TIME)
        if isinstance(updated, SystemValue) and updated.value:
            return str(updated.value)
        return None

    def record_number(self) -> Optional[str]:
        number = self.first_of_type(FieldType.RECORD_NUMBER)
        if isinstance(number, SystemValue) and number.value not in (None, ""):
            return str(number.value)
        return None

    def business_key(self) -> Optional[str]:
        """
        Key used to find the record's live counterpart.

        Prefers the internal record id and falls back to the record-number
        field.
        """
        return self.record_id or self.record_number()

    def attachment_fields(self) -> list[str]:
        return [
            code
            for code, field_value in self.fields().items()
            if isinstance(field_value, AttachmentValue)
        ]

    def attachments(self, field_codes: list[str]) -> list[FileRef]:
        files: list[FileRef] = []
        for code in field_codes:
            field_value = parse_field(code, self.raw.get(code))
            if isinstance(field_value, AttachmentValue):
                files.extend(field_value.files)
        return files

    def restore_payload(self) -> dict[str, Any]:
        """
        Build the record body to send back to the service.

        System fields and read-only variants (record number, id, revision,
        creator/modifier, timestamps, status, calculated, category) are
        dropped.
        """
        payload: dict[str, Any] = {}
        for code, field_value in self.fields().items():
            if code in SYSTEM_FIELD_CODES or field_value.read_only:
                continue
            payload[code] = field_value.to_payload()
        return payload


def find_attachment_fields(
    records: list[dict[str, Any]], scan_all_records: bool = False
) -> list[str]:
    """
    Discover FILE field codes in a record set.

    By default only the first record is inspected. With scan_all_records,
    every record contributes, preserving first-seen order.
    """
    if not records:
        return []

    sample = records if scan_all_records else records[:1]
    codes: list[str] = []
    for raw in sample:
        for code in Record(raw).attachment_fields():
            if code not in codes:
                codes.append(code)
    return codes
