"""
Tests for architecture list normalization.

Run: pytest tests/test_arch_spec.py -v
"""
import re

import pytest

from arch_spec import (
    DEFAULT_ARCH_LIST,
    POLICY_DROP,
    POLICY_OVERRIDE,
    POLICY_STRIP,
    ArchConfigError,
    ArchEntry,
    EmptyArchList,
    InvalidArchToken,
    normalize,
    parse,
)

VALID_SPECS = [
    "8.9",
    "8.9;9.0",
    "8.9,9.0+PTX",
    "8.9;9.0;9.0a",
    "12.0",
    "8.9;12.0",
    "7.5, 8.0 ;8.6,8.9+PTX",
    "9.0;9.0a;9.0+PTX",
    "10.0a,12.0a",
]


class TestParse:
    def test_entries_keep_order_and_qualifiers(self):
        spec = parse("8.9;9.0+PTX;9.0a")
        assert spec.raw == "8.9;9.0+PTX;9.0a"
        assert spec.entries == [
            ArchEntry(8, 9),
            ArchEntry(9, 0, "+PTX"),
            ArchEntry(9, 0, "a"),
        ]

    def test_two_digit_major(self):
        assert parse("12.0").entries == [ArchEntry(12, 0)]

    def test_whitespace_and_empty_tokens_are_ignored(self):
        assert parse(" 8.9 ;; 9.0 ,").entries == [ArchEntry(8, 9), ArchEntry(9, 0)]

    def test_exact_duplicates_collapse(self):
        assert parse("8.9;9.0;8.9").entries == [ArchEntry(8, 9), ArchEntry(9, 0)]

    @pytest.mark.parametrize("token", ["89", "8.", "8.10", "sm_89", "9.0b", "9.0+ptx", "9.0 a", "x", "\u0668.\u0669"])
    def test_invalid_token(self, token):
        spec = f"8.9;{token}"
        with pytest.raises(InvalidArchToken) as excinfo:
            parse(spec)
        assert excinfo.value.token == token
        assert excinfo.value.spec == spec
        assert token in str(excinfo.value)
        assert spec in str(excinfo.value)


class TestNormalize:
    def test_plain_list(self):
        assert normalize("8.9;9.0") == ("8.9;9.0", "89;90", "")

    def test_ptx_is_stripped_from_numeric(self):
        lists = normalize("8.9,9.0+PTX")
        assert lists.dotted == "8.9;9.0+PTX"
        assert lists.numeric == "89;90"

    def test_unpacks_as_dotted_and_numeric(self):
        dotted, numeric, _ = normalize("8.9;12.0")
        assert (dotted, numeric) == ("8.9;12.0", "89;120")

    def test_empty_uses_default(self):
        assert normalize("", default="8.9;9.0;9.0a") == normalize("8.9;9.0;9.0a")

    def test_none_uses_module_default(self):
        assert normalize(None) == normalize(DEFAULT_ARCH_LIST)

    def test_whitespace_only_uses_default(self):
        assert normalize("   ", default="8.9").dotted == "8.9"

    @pytest.mark.parametrize("spec", [",", ";", " ; , "])
    def test_separators_only_is_empty(self, spec):
        with pytest.raises(EmptyArchList):
            normalize(spec)

    def test_errors_share_base_class(self):
        with pytest.raises(ArchConfigError):
            normalize("8.9;nine")

    def test_non_ascii_digits_rejected(self):
        with pytest.raises(InvalidArchToken):
            normalize("٨.٩")

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            normalize("8.9", policy="keep")

    @pytest.mark.parametrize("spec", VALID_SPECS)
    def test_dotted_is_idempotent(self, spec):
        dotted = normalize(spec).dotted
        assert normalize(dotted).dotted == dotted

    @pytest.mark.parametrize("policy", [POLICY_OVERRIDE, POLICY_STRIP, POLICY_DROP])
    @pytest.mark.parametrize("spec", VALID_SPECS)
    def test_numeric_entries_unique_and_numeric(self, spec, policy):
        numeric = normalize(spec, policy=policy).numeric
        values = numeric.split(";") if numeric else []
        assert len(values) == len(set(values))
        assert all(re.match(r'^[0-9]+$', value) for value in values)


class TestQualifierPolicy:
    def test_override_routes_accelerated_to_side_channel(self):
        assert normalize("9.0a") == ("9.0a", "", "90a")

    def test_override_with_xformers_defaults(self):
        assert normalize("8.9;9.0;9.0a") == ("8.9;9.0;9.0a", "89;90", "90a")

    def test_override_multiple_accelerated(self):
        lists = normalize("9.0a;10.0a;12.0")
        assert lists.numeric == "120"
        assert lists.accelerated == "90a;100a"

    def test_strip_merges_into_numeric(self):
        assert normalize("9.0a", policy=POLICY_STRIP) == ("9.0a", "90", "")

    def test_strip_deduplicates(self):
        assert normalize("8.9;9.0;9.0a", policy=POLICY_STRIP).numeric == "89;90"

    def test_drop_removes_accelerated(self):
        assert normalize("9.0a", policy=POLICY_DROP) == ("9.0a", "", "")
        assert normalize("8.9;9.0a", policy=POLICY_DROP).numeric == "89"

    @pytest.mark.parametrize("policy", [POLICY_OVERRIDE, POLICY_STRIP, POLICY_DROP])
    def test_ptx_same_under_every_policy(self, policy):
        assert normalize("9.0+PTX", policy=policy).numeric == "90"
