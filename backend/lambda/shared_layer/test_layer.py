"""test_layer.py — Unit tests for building_safety_shared layer modules.

Run from shared_layer directory:
    PYTHONPATH=python python3 -m pytest test_layer.py -v
"""

from __future__ import annotations

import base64
import json
import os
import sys
import unittest
from decimal import Decimal
from unittest.mock import MagicMock, patch

# Ensure the layer's python/ directory is importable.
sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "python"))

import building_safety_shared.auth as auth_mod  # noqa: E402
from building_safety_shared.auth import _authenticate, _extract_token  # noqa: E402
from building_safety_shared.aws_clients import _get_ddb, _get_s3  # noqa: E402
from building_safety_shared.http_utils import (  # noqa: E402
    _error,
    _header,
    _json_body,
    _path_method,
    _raw_body,
    _response,
)
from building_safety_shared.serialization import (  # noqa: E402
    _deserialize,
    _emit_structured_observability,
    _now_z,
    _serialize,
    _serialize_item,
)


class AuthTests(unittest.TestCase):
    def setUp(self):
        self._orig = (auth_mod.INTERNAL_API_KEY, auth_mod.INTERNAL_API_KEY_PREVIOUS, auth_mod.INTERNAL_API_KEYS)

    def tearDown(self):
        auth_mod.INTERNAL_API_KEY, auth_mod.INTERNAL_API_KEY_PREVIOUS, auth_mod.INTERNAL_API_KEYS = self._orig

    def _set_keys(self, active="", previous=""):
        auth_mod.INTERNAL_API_KEY = active
        auth_mod.INTERNAL_API_KEY_PREVIOUS = previous
        auth_mod.INTERNAL_API_KEYS = auth_mod._normalize_api_keys(active, previous)

    def test_extract_token_from_cookie_header(self):
        event = {"headers": {"Cookie": "building_safety_id_token=abc123; other=val"}}
        self.assertEqual(_extract_token(event), "abc123")

    def test_extract_token_from_cookies_array(self):
        event = {"headers": {}, "cookies": ["building_safety_id_token=xyz789", "other=val"]}
        self.assertEqual(_extract_token(event), "xyz789")

    def test_extract_token_from_bearer_header(self):
        event = {"headers": {"Authorization": "Bearer tok-1"}}
        self.assertEqual(_extract_token(event), "tok-1")

    def test_extract_token_missing(self):
        self.assertIsNone(_extract_token({"headers": {"cookie": "other=val"}}))
        self.assertIsNone(_extract_token({"headers": {"authorization": "Basic abc"}}))

    def test_normalize_api_keys(self):
        self.assertEqual(auth_mod._normalize_api_keys("a, b", "", "b", "c"), ("a", "b", "c"))

    def test_authenticate_internal_key(self):
        self._set_keys(active="test-key-123")
        event = {"headers": {"X-Building-Safety-Internal-Key": "test-key-123"}}
        claims, err = _authenticate(event)
        self.assertIsNone(err)
        self.assertEqual(claims["auth_mode"], "internal-key")

    def test_authenticate_previous_internal_key(self):
        self._set_keys(active="active-key", previous="previous-key")
        event = {"headers": {"x-building-safety-internal-key": "previous-key"}}
        claims, err = _authenticate(event)
        self.assertIsNone(err)
        self.assertEqual(claims["auth_mode"], "internal-key")

    def test_authenticate_wrong_internal_key_falls_through_to_401(self):
        self._set_keys(active="active-key")
        event = {"headers": {"x-building-safety-internal-key": "guess"}}
        claims, err = _authenticate(event)
        self.assertIsNone(claims)
        self.assertEqual(err["statusCode"], 401)

    def test_authenticate_no_token(self):
        self._set_keys()
        claims, err = _authenticate({"headers": {}})
        self.assertIsNone(claims)
        self.assertEqual(err["statusCode"], 401)

    def test_authenticate_invalid_token_uses_error_fn(self):
        self._set_keys()
        error_fn = MagicMock(return_value={"statusCode": 401})
        with patch.object(auth_mod, "_verify_token", side_effect=ValueError("Token has expired.")):
            claims, err = _authenticate({"headers": {"authorization": "Bearer x"}}, error_fn=error_fn)
        self.assertIsNone(claims)
        error_fn.assert_called_once_with(401, "Token has expired.")

    def test_authenticate_valid_token(self):
        self._set_keys()
        with patch.object(auth_mod, "_verify_token", return_value={"sub": "u1"}) as verify:
            claims, err = _authenticate({"cookies": ["building_safety_id_token=jwt"]})
        self.assertEqual(claims, {"sub": "u1"})
        self.assertIsNone(err)
        verify.assert_called_once_with("jwt")


class VerifyTokenTests(unittest.TestCase):
    def _verify(self, header, claims=None, key=object()):
        with patch.object(auth_mod.jwt, "get_unverified_header", return_value=header), \
                patch.object(auth_mod, "_get_jwks_key", return_value=key), \
                patch.object(auth_mod.jwt, "decode", return_value=claims or {}):
            return auth_mod._verify_token("header.payload.sig")

    def test_id_token_claims_returned(self):
        claims = {"sub": "u1", "token_use": "id", "email": "a@example.com"}
        self.assertEqual(self._verify({"kid": "k1", "alg": "RS256"}, claims), claims)

    def test_access_token_rejected(self):
        with self.assertRaises(ValueError):
            self._verify({"kid": "k1", "alg": "RS256"}, {"sub": "u1", "token_use": "access"})

    def test_non_rs256_rejected(self):
        with self.assertRaises(ValueError):
            self._verify({"kid": "k1", "alg": "HS256"})

    def test_unknown_kid_rejected(self):
        with self.assertRaises(ValueError):
            self._verify({"kid": "missing", "alg": "RS256"}, key=None)


class JwksCacheTests(unittest.TestCase):
    def test_refreshes_once_for_unknown_kid_after_min_interval(self):
        cache = auth_mod._JwksCache()

        def refresh():
            cache._keys = {"k1": "key-1"}
            cache._fetched_at = now[0]

        now = [1000.0]
        with patch.object(cache, "_refresh", side_effect=refresh) as fake_refresh, \
                patch.object(auth_mod.time, "time", side_effect=lambda: now[0]):
            self.assertEqual(cache.get("k1"), "key-1")
            self.assertIsNone(cache.get("k2"))
            self.assertEqual(fake_refresh.call_count, 1)
            now[0] += 120
            self.assertIsNone(cache.get("k2"))
            self.assertEqual(fake_refresh.call_count, 2)
            now[0] += 4000
            cache.get("k1")
            self.assertEqual(fake_refresh.call_count, 3)


class HttpUtilsTests(unittest.TestCase):
    def test_response_format(self):
        resp = _response(200, {"key": "val", "n": Decimal("2")})
        self.assertEqual(resp["statusCode"], 200)
        self.assertEqual(resp["headers"]["Content-Type"], "application/json")
        self.assertIn("Access-Control-Allow-Origin", resp["headers"])
        self.assertEqual(json.loads(resp["body"]), {"key": "val", "n": 2})

    def test_error_format(self):
        resp = _error(400, "bad input")
        self.assertEqual(resp["statusCode"], 400)
        body = json.loads(resp["body"])
        self.assertFalse(body["success"])
        self.assertEqual(body["error"], "bad input")
        self.assertEqual(body["error_envelope"]["code"], "INVALID_INPUT")
        self.assertFalse(body["error_envelope"]["retryable"])

    def test_error_default_codes(self):
        for status, code in [(401, "PERMISSION_DENIED"), (403, "FORBIDDEN"), (404, "NOT_FOUND"),
                             (405, "METHOD_NOT_ALLOWED"), (409, "CONFLICT"), (500, "INTERNAL_ERROR")]:
            with self.subTest(status=status):
                body = json.loads(_error(status, "x")["body"])
                self.assertEqual(body["error_envelope"]["code"], code)
        self.assertTrue(json.loads(_error(500, "x")["body"])["error_envelope"]["retryable"])

    def test_error_explicit_code_and_details(self):
        body = json.loads(_error(502, "upstream", code="upstream_error", retryable=True, attempts=3)["body"])
        self.assertEqual(body["error_envelope"]["code"], "UPSTREAM_ERROR")
        self.assertTrue(body["error_envelope"]["retryable"])
        self.assertEqual(body["error_envelope"]["details"], {"attempts": 3})
        self.assertEqual(body["attempts"], 3)

    def test_json_body(self):
        event = {"body": '{"key": "val"}', "isBase64Encoded": False}
        self.assertEqual(_json_body(event), {"key": "val"})
        self.assertEqual(_json_body({}), {})

    def test_json_body_base64(self):
        raw = base64.b64encode(b'{"key": "b64"}').decode()
        self.assertEqual(_json_body({"body": raw, "isBase64Encoded": True}), {"key": "b64"})

    def test_json_body_rejects_malformed_and_non_objects(self):
        with self.assertRaises(ValueError):
            _json_body({"body": "{not json"})
        with self.assertRaises(ValueError):
            _json_body({"body": "[1, 2]"})

    def test_header_lookup_is_case_insensitive(self):
        event = {"headers": {"Content-Type": "text/csv", "X-Empty": None}}
        self.assertEqual(_header(event, "content-type"), "text/csv")
        self.assertEqual(_header(event, "x-empty"), "")
        self.assertEqual(_header({"headers": None}, "content-type"), "")

    def test_raw_body_bytes(self):
        self.assertEqual(_raw_body({"body": "abc"}), b"abc")
        self.assertEqual(_raw_body({"body": None}), b"")

    def test_path_method(self):
        event = {"requestContext": {"http": {"method": "post", "path": "/api/v1/test"}}}
        self.assertEqual(_path_method(event), ("POST", "/api/v1/test"))
        self.assertEqual(_path_method({"httpMethod": "DELETE", "path": "/x"}), ("DELETE", "/x"))


class SerializationTests(unittest.TestCase):
    def test_serialize_string(self):
        self.assertEqual(_serialize("hello"), {"S": "hello"})

    def test_serialize_float(self):
        self.assertEqual(_serialize(3.14)["N"], "3.14")

    def test_serialize_item_drops_none(self):
        self.assertEqual(_serialize_item({"a": "x", "b": None}), {"a": {"S": "x"}})

    def test_deserialize_item(self):
        item = {
            "name": {"S": "test"},
            "count": {"N": "42"},
            "ratio": {"N": "0.5"},
            "cells": {"M": {"0_0": {"S": "a"}}},
        }
        result = _deserialize(item)
        self.assertEqual(result["name"], "test")
        self.assertEqual(result["count"], 42)
        self.assertIsInstance(result["count"], int)
        self.assertEqual(result["ratio"], 0.5)
        self.assertEqual(result["cells"], {"0_0": "a"})

    def test_now_z_format(self):
        self.assertRegex(_now_z(), r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")

    def test_observability_line(self):
        with self.assertLogs("building_safety_shared.serialization", level="INFO") as logs:
            _emit_structured_observability(
                component="cause_effect_matrix",
                event="cell_written",
                building_key="tower-1",
                actor="a@example.com",
                latency_ms=-5,
                extra={"row_index": 2},
            )
        line = logs.output[0]
        payload = json.loads(line[line.index("{"):])
        self.assertEqual(payload["event"], "cell_written")
        self.assertEqual(payload["latency_ms"], 0)
        self.assertEqual(payload["row_index"], 2)
        self.assertIn("[OBSERVABILITY]", line)


class AwsClientTests(unittest.TestCase):
    @patch("building_safety_shared.aws_clients.boto3")
    def test_get_ddb_singleton(self, mock_boto3):
        import building_safety_shared.aws_clients as clients

        clients._ddb = None  # Reset singleton
        mock_boto3.client.return_value = MagicMock()
        try:
            self.assertIs(_get_ddb(), _get_ddb())
            mock_boto3.client.assert_called_once()
            self.assertEqual(mock_boto3.client.call_args[0][0], "dynamodb")
        finally:
            clients._ddb = None

    @patch("building_safety_shared.aws_clients.boto3")
    def test_get_s3_uses_region_override(self, mock_boto3):
        import building_safety_shared.aws_clients as clients

        clients._s3 = None
        try:
            _get_s3(region="eu-west-1")
            _, kwargs = mock_boto3.client.call_args
            self.assertEqual(kwargs["region_name"], "eu-west-1")
            self.assertEqual(kwargs["config"].retries["max_attempts"], 3)
        finally:
            clients._s3 = None


if __name__ == "__main__":
    unittest.main()
