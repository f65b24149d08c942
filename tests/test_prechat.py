"""Tests for the pre-chat gate."""

from chatdesk.schemas.widget import PrechatField
from chatdesk.services import prechat

FORM = [
    {"id": "company", "type": "text", "label": "Company", "required": False, "order": 4},
    {"id": "email", "type": "email", "label": "Email", "required": True, "order": 1},
    {"id": "full_name", "type": "text", "label": "Name", "required": True, "order": 2},
    {"id": "phone", "type": "phone", "label": "Phone", "required": False, "order": 3},
    {"id": "terms", "type": "checkbox", "label": "I accept the terms", "required": True, "order": 5},
]


class TestValidate:
    """Tests for prechat.validate."""

    def test_all_required_present(self):
        result = prechat.validate(
            FORM,
            {"email": "ada@example.com", "full_name": "Ada", "terms": True},
        )
        assert result.ok is True
        assert result.missing_field_ids == []

    def test_matches_by_id_not_label(self):
        """A value submitted under the field label does not satisfy the field."""
        result = prechat.validate(
            FORM,
            {"Email": "ada@example.com", "Name": "Ada", "full_name": "Ada", "terms": True},
        )
        assert result.ok is False
        assert result.missing_field_ids == ["email"]

    def test_whitespace_and_false_are_missing(self):
        result = prechat.validate(FORM, {"email": "   ", "full_name": "Ada", "terms": False})
        assert result.missing_field_ids == ["email", "terms"]

    def test_missing_ids_follow_display_order(self):
        result = prechat.validate(FORM, {})
        assert result.missing_field_ids == ["email", "full_name", "terms"]

    def test_unknown_keys_ignored(self):
        result = prechat.validate(
            FORM,
            {"email": "a@b.co", "full_name": "Ada", "terms": True, "utm_source": "ads"},
        )
        assert result.ok is True

    def test_empty_form_always_passes(self):
        assert prechat.validate(None, None).ok is True
        assert prechat.validate([], {"anything": 1}).ok is True

    def test_accepts_field_models(self):
        fields = [PrechatField(id="email", label="Email", type="email", required=True)]
        assert prechat.validate(fields, {"email": "a@b.co"}).ok is True


class TestOrderedFields:
    def test_sorted_by_order(self):
        assert [f.id for f in prechat.ordered_fields(FORM)] == [
            "email",
            "full_name",
            "phone",
            "company",
            "terms",
        ]

    def test_equal_orders_keep_definition_order(self):
        fields = [
            {"id": "b", "label": "B"},
            {"id": "a", "label": "A"},
        ]
        assert [f.id for f in prechat.ordered_fields(fields)] == ["b", "a"]


class TestContactDetails:
    def test_picks_fields_by_type(self):
        details = prechat.contact_details(
            FORM,
            {"email": " Ada@Example.COM ", "full_name": "Ada Lovelace", "phone": "+1 555 0100"},
        )
        assert details == {"email": "ada@example.com", "name": "Ada Lovelace", "phone": "+1 555 0100"}

    def test_ignores_blank_and_non_string_values(self):
        details = prechat.contact_details(FORM, {"email": "", "full_name": None, "terms": True})
        assert details == {}
