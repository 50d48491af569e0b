"""
Unit tests for the record field value model.
"""

from kintone_backup.records.fields import (
    AttachmentValue,
    ChoiceValue,
    ComputedValue,
    EntityRefValue,
    FieldType,
    FileRef,
    MultiChoiceValue,
    NumberValue,
    Record,
    SubtableValue,
    SystemValue,
    TextValue,
    UnknownValue,
    find_attachment_fields,
    parse_field,
)


def sample_record():
    """A record with one field of most kinds."""
    return {
        "$id": {"type": "__ID__", "value": "7"},
        "$revision": {"type": "__REVISION__", "value": "3"},
        "RecordNo": {"type": "RECORD_NUMBER", "value": "7"},
        "Updated": {"type": "UPDATED_TIME", "value": "2024-01-20T10:30:00Z"},
        "Creator": {"type": "CREATOR", "value": {"code": "alice", "name": "Alice"}},
        "Title": {"type": "SINGLE_LINE_TEXT", "value": "Order 7"},
        "Amount": {"type": "NUMBER", "value": "1200"},
        "Total": {"type": "CALC", "value": "1320"},
        "Priority": {"type": "DROP_DOWN", "value": "High"},
        "Tags": {"type": "CHECK_BOX", "value": ["a", "b"]},
        "Owner": {
            "type": "USER_SELECT",
            "value": [{"code": "bob", "name": "Bob"}],
        },
        "Docs": {
            "type": "FILE",
            "value": [
                {
                    "fileKey": "k1",
                    "name": "spec.pdf",
                    "contentType": "application/pdf",
                    "size": "2048",
                }
            ],
        },
        "Lines": {
            "type": "SUBTABLE",
            "value": [
                {
                    "id": "55",
                    "value": {
                        "Item": {"type": "SINGLE_LINE_TEXT", "value": "Pen"},
                        "LineTotal": {"type": "CALC", "value": "100"},
                    },
                }
            ],
        },
    }


class TestParseField:
    """Tests for parsing raw field objects into variants."""

    def test_variants_by_type(self):
        """Test that each field type maps to its variant."""
        fields = Record(sample_record()).fields()

        assert isinstance(fields["$id"], SystemValue)
        assert isinstance(fields["Creator"], SystemValue)
        assert isinstance(fields["Title"], TextValue)
        assert isinstance(fields["Amount"], NumberValue)
        assert isinstance(fields["Total"], ComputedValue)
        assert isinstance(fields["Priority"], ChoiceValue)
        assert isinstance(fields["Tags"], MultiChoiceValue)
        assert isinstance(fields["Owner"], EntityRefValue)
        assert isinstance(fields["Docs"], AttachmentValue)
        assert isinstance(fields["Lines"], SubtableValue)

    def test_unknown_type_is_passed_through(self):
        """Test that unknown types keep their raw value."""
        value = parse_field("X", {"type": "REFERENCE_TABLE", "value": {"a": 1}})

        assert isinstance(value, UnknownValue)
        assert value.type is FieldType.UNKNOWN
        assert value.to_payload() == {"value": {"a": 1}}

    def test_non_dict_raw_value(self):
        """Test that malformed entries parse as unknown."""
        assert isinstance(parse_field("X", "oops"), UnknownValue)

    def test_file_refs(self):
        """Test that attachment entries keep key, name and size."""
        docs = Record(sample_record()).fields()["Docs"]

        assert docs.files == [FileRef("k1", "spec.pdf", "application/pdf", 2048)]
        assert docs.to_payload() == {
            "value": [
                {
                    "fileKey": "k1",
                    "name": "spec.pdf",
                    "contentType": "application/pdf",
                    "size": "2048",
                }
            ]
        }

    def test_display_values(self):
        """Test human readable rendering of variants."""
        fields = Record(sample_record()).fields()

        assert fields["Tags"].display() == "a, b"
        assert fields["Owner"].display() == "Bob"
        assert fields["Creator"].display() == "Alice"
        assert fields["Docs"].display() == "spec.pdf"
        assert fields["Lines"].display() == "1 row(s)"
        assert fields["Title"].display() == "Order 7"

    def test_read_only_flags(self):
        """Test that system and computed variants are read-only."""
        fields = Record(sample_record()).fields()

        assert fields["$id"].read_only
        assert fields["Total"].read_only
        assert not fields["Title"].read_only
        assert not fields["Docs"].read_only


class TestRecord:
    """Tests for record-level helpers."""

    def test_identity_fields(self):
        """Test record id, revision and record number."""
        record = Record(sample_record())

        assert record.record_id == "7"
        assert record.revision == "3"
        assert record.record_number() == "7"

    def test_updated_time_prefers_configured_field(self):
        """Test that the configured field code is read first."""
        raw = sample_record()
        raw["更新日時"] = {"type": "UPDATED_TIME", "value": "2024-02-01T00:00:00Z"}

        assert Record(raw).updated_time("更新日時") == "2024-02-01T00:00:00Z"

    def test_updated_time_falls_back_to_field_type(self):
        """Test that any UPDATED_TIME field is used when the code is absent."""
        assert Record(sample_record()).updated_time("更新日時") == "2024-01-20T10:30:00Z"

    def test_updated_time_missing(self):
        """Test that records without an updated time return None."""
        raw = {"$id": {"type": "__ID__", "value": "1"}}
        assert Record(raw).updated_time("更新日時") is None

    def test_business_key_prefers_record_id(self):
        """Test that $id is the preferred business key."""
        raw = sample_record()
        raw["RecordNo"]["value"] = "APP-7"

        assert Record(raw).business_key() == "7"

    def test_business_key_falls_back_to_record_number(self):
        """Test the record-number fallback when $id is missing."""
        raw = sample_record()
        del raw["$id"]

        assert Record(raw).business_key() == "7"

    def test_business_key_absent(self):
        """Test that records with neither key return None."""
        raw = {"Title": {"type": "SINGLE_LINE_TEXT", "value": "x"}}
        assert Record(raw).business_key() is None

    def test_restore_payload_strips_system_and_computed_fields(self):
        """Test that only writable fields are sent back."""
        payload = Record(sample_record()).restore_payload()

        assert set(payload) == {
            "Title",
            "Amount",
            "Priority",
            "Tags",
            "Owner",
            "Docs",
            "Lines",
        }
        assert payload["Owner"] == {"value": [{"code": "bob"}]}
        assert payload["Tags"] == {"value": ["a", "b"]}

    def test_restore_payload_subtable_keeps_row_id(self):
        """Test that subtable rows keep their id and drop computed cells."""
        payload = Record(sample_record()).restore_payload()

        assert payload["Lines"] == {
            "value": [{"id": "55", "value": {"Item": {"value": "Pen"}}}]
        }

    def test_attachments_for_field_codes(self):
        """Test collecting file references from given fields."""
        record = Record(sample_record())

        assert record.attachment_fields() == ["Docs"]
        assert [f.file_key for f in record.attachments(["Docs", "Missing"])] == ["k1"]


class TestFindAttachmentFields:
    """Tests for attachment field discovery."""

    def records(self):
        first = {"$id": {"type": "__ID__", "value": "1"}}
        second = {
            "$id": {"type": "__ID__", "value": "2"},
            "Photos": {"type": "FILE", "value": []},
        }
        return [first, second]

    def test_only_first_record_by_default(self):
        """Test that only the first record is inspected by default."""
        assert find_attachment_fields(self.records()) == []

    def test_scan_all_records(self):
        """Test that every record is inspected when enabled."""
        assert find_attachment_fields(self.records(), scan_all_records=True) == [
            "Photos"
        ]

    def test_empty_record_set(self):
        """Test that an empty record set has no attachment fields."""
        assert find_attachment_fields([]) == []
