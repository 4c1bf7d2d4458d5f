from mxcrypt.e2ee.encoding import canonical_json, decode_base64, encode_base64


def test_base64_is_unpadded():
    encoded = encode_base64(b"\x00\x01")
    assert not encoded.endswith("=")
    assert decode_base64(encoded) == b"\x00\x01"


def test_canonical_json_ignores_signatures():
    signed = {"b": 1, "a": "é", "signatures": {"@a:x": {}}, "unsigned": {"age": 3}}
    assert canonical_json(signed) == '{"a":"é","b":1}'
