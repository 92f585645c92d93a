import hashlib

import pytest

from coursepay.robokassa import (
    RobokassaSigner, SignatureAlgorithm, extract_shp, shp_value,
    sign_initiate, sign_result, verify,
)


def test_sign_initiate_is_deterministic():
    args = ("shop", "5490.00", 42, None, {"Shp_email": "a@b.com"}, "p1")
    assert sign_initiate(*args) == sign_initiate(*args)


def test_sign_initiate_matches_canonical_string():
    sig = sign_initiate("shop", "5490.00", 42, "%7B%7D",
                        {"Shp_product": "course", "Shp_email": "a@b.com"},
                        "p1")
    expected = hashlib.md5(
        b"shop:5490.00:42:%7B%7D:Shp_email=a@b.com:Shp_product=course:p1"
    ).hexdigest()
    assert sig == expected


def test_password_before_custom_fields_when_configured():
    sig = sign_result("10.00", 7, {"Shp_b": "2", "Shp_a": "1"}, "p2",
                      SignatureAlgorithm.SHA256, shp_after_password=True)
    expected = hashlib.sha256(b"10.00:7:p2:Shp_a=1:Shp_b=2").hexdigest()
    assert sig == expected


def test_custom_field_order_does_not_matter():
    a = sign_initiate("shop", "100.00", 1, None, {"a": 1, "b": 2}, "p1")
    b = sign_initiate("shop", "100.00", 1, None, {"b": 2, "a": 1}, "p1")
    assert a == b


@pytest.mark.parametrize("changed", [
    {"a": 1, "b": 3},
    {"a": 2, "b": 2},
    {"a": 1, "b": 2, "c": ""},
])
def test_any_value_change_changes_digest(changed):
    base = sign_initiate("shop", "100.00", 1, None, {"a": 1, "b": 2}, "p1")
    assert sign_initiate("shop", "100.00", 1, None, changed, "p1") != base


def test_receipt_takes_part_in_signature():
    without = sign_initiate("shop", "100.00", 1, None, {}, "p1")
    with_receipt = sign_initiate("shop", "100.00", 1, "%7B%7D", {}, "p1")
    assert without != with_receipt


def test_result_signature_differs_by_algorithm():
    md5 = sign_result("100.00", 1, {}, "p2", SignatureAlgorithm.MD5)
    sha = sign_result("100.00", 1, {}, "p2", SignatureAlgorithm.SHA256)
    assert len(md5) == 32
    assert len(sha) == 64


def test_verify_is_case_insensitive():
    assert verify("ABC123", "abc123")
    assert verify("abc123", "ABC123")


@pytest.mark.parametrize("provided", ["abc124", "", None, "abc1234",
                                      "äbc123"])
def test_verify_rejects_mismatch_without_raising(provided):
    assert not verify("abc123", provided)


def test_extract_shp_matches_prefix_case_insensitively():
    params = {"OutSum": "1.00", "Shp_email": "a@b.com", "SHP_product": "x",
              "shp_promo": "SUMMER10", "Shipping": "no"}
    shp = extract_shp(params)
    assert shp == {"Shp_email": "a@b.com", "SHP_product": "x",
                   "shp_promo": "SUMMER10"}
    assert shp_value(shp, "product") == "x"
    assert shp_value(shp, "missing") is None


def test_algorithm_names():
    assert SignatureAlgorithm.from_name(" SHA256 ") == "sha256"
    with pytest.raises(ValueError) as e:
        SignatureAlgorithm.from_name("sha1")
    assert e.value.__cause__ is None
    assert e.value.__suppress_context__


def test_signer_verifies_its_own_result_signature():
    signer = RobokassaSigner(login="shop", initiate_password="p1",
                             result_password="p2")
    shp = {"Shp_email": "a@b.com"}
    sig = signer.expected_result("990.00", 5, shp)
    assert signer.verify_result("990.00", 5, shp, sig.upper())
    assert not signer.verify_result("500.00", 5, shp, sig)
