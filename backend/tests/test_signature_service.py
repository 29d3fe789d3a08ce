import base64
import hashlib
import random

import pytest

from cmi_gateway.services.signature_service import (
    canonicalize,
    compute_signature,
    escape_value,
    excluded_field_set,
    sign_fields,
    verify_signature,
)

SECRET = "store|key\\1"
EXCLUDED = excluded_field_set(["customData"])


def _b64_sha512(text: str) -> str:
    return base64.b64encode(hashlib.sha512(text.encode("utf-8")).digest()).decode("ascii")


class TestCanonicalize:
    def test_sorts_case_insensitively_and_appends_separator(self):
        fields = {"oid": "TXN_1", "Amount": "100.00", "BillToName": "Ali"}
        assert canonicalize(fields) == b"100.00|Ali|TXN_1|"

    def test_excludes_hash_encoding_and_carrier_fields(self):
        fields = {
            "amount": "10",
            "HASH": "abc",
            "Encoding": "UTF-8",
            "CUSTOMDATA": '{"guest_id": 1}',
        }
        assert canonicalize(fields, EXCLUDED) == b"10|"

    def test_escapes_backslash_then_pipe(self):
        assert escape_value("a\\b|c") == "a\\\\b\\|c"
        assert canonicalize({"x": "a|b"}) == b"a\\|b|"

    def test_percent_decodes_values(self):
        assert canonicalize({"email": "a%40b.com", "name": "Ali%20B"}) == b"a@b.com|Ali B|"

    def test_strips_one_trailing_line_break(self):
        assert canonicalize({"a": "value\n"}) == b"value|"
        assert canonicalize({"a": "value\n\n"}) == b"value\n|"
        assert canonicalize({"a": "value"}) == b"value|"

    def test_carriage_return_before_trailing_line_feed_is_kept(self):
        assert canonicalize({"a": "value\r\n"}) == b"value\r|"
        assert canonicalize({"a": "value\r"}) == b"value\r|"

    def test_malformed_percent_encoding_raises(self):
        with pytest.raises(ValueError):
            canonicalize({"a": "100%"})
        with pytest.raises(ValueError):
            canonicalize({"a": "%ZZ"})

    def test_non_string_values_are_stringified(self):
        assert canonicalize({"amount": 100, "flag": True}) == b"100|True|"

    def test_case_colliding_names_do_not_depend_on_input_order(self):
        first = {"oid": "a", "OID": "b", "Oid": "c"}
        second = {"Oid": "c", "OID": "b", "oid": "a"}
        assert canonicalize(first) == canonicalize(second)


class TestComputeSignature:
    def test_matches_reference_construction(self):
        fields = {"b": "2", "A": "1", "HASH": "ignored", "encoding": "UTF-8"}
        expected = _b64_sha512("1|2|store\\|key\\\\1")
        assert compute_signature(fields, SECRET) == expected

    def test_field_order_does_not_matter(self):
        fields = {"ReturnOid": "TXN_1", "ProcReturnCode": "00", "amount": "100.00", "mdStatus": "1", "rnd": "xyz"}
        items = list(fields.items())
        random.Random(7).shuffle(items)
        assert compute_signature(dict(items), SECRET) == compute_signature(fields, SECRET)

    def test_excluded_fields_never_influence_digest(self):
        fields = {"amount": "100.00", "oid": "TXN_1"}
        with_noise = dict(fields, HASH="zzz", encoding="ISO-8859-9", customData="{}")
        assert compute_signature(with_noise, SECRET, EXCLUDED) == compute_signature(fields, SECRET, EXCLUDED)


class TestVerifySignature:
    def setup_method(self):
        self.fields = sign_fields(
            {"ReturnOid": "TXN_1", "ProcReturnCode": "00", "amount": "100.00", "customData": "{}"},
            SECRET,
            EXCLUDED,
        )

    def test_valid_signature(self):
        assert verify_signature(self.fields, self.fields["HASH"], SECRET, EXCLUDED)

    def test_tampered_digest_fails(self):
        digest = self.fields["HASH"]
        flipped = ("A" if digest[0] != "A" else "B") + digest[1:]
        assert not verify_signature(self.fields, flipped, SECRET, EXCLUDED)

    def test_tampered_field_fails(self):
        tampered = dict(self.fields, amount="1.00")
        assert not verify_signature(tampered, self.fields["HASH"], SECRET, EXCLUDED)

    def test_carrier_field_may_change(self):
        changed = dict(self.fields, customData='{"guest_id": 2}')
        assert verify_signature(changed, self.fields["HASH"], SECRET, EXCLUDED)

    def test_comparison_is_exact(self):
        assert not verify_signature(self.fields, self.fields["HASH"].lower(), SECRET, EXCLUDED)
        assert not verify_signature(self.fields, self.fields["HASH"][:-4], SECRET, EXCLUDED)

    def test_missing_secret_fails_closed(self):
        assert not verify_signature(self.fields, self.fields["HASH"], "", EXCLUDED)
        assert not verify_signature(self.fields, self.fields["HASH"], None, EXCLUDED)

    def test_missing_hash_fails_closed(self):
        assert not verify_signature(self.fields, None, SECRET, EXCLUDED)

    def test_malformed_value_fails_instead_of_raising(self):
        broken = dict(self.fields, amount="100%")
        assert not verify_signature(broken, self.fields["HASH"], SECRET, EXCLUDED)

    def test_non_ascii_provided_hash_fails(self):
        assert not verify_signature(self.fields, "é" * 88, SECRET, EXCLUDED)
