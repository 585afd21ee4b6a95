"""
Tests for eventrelay.utils: paths, timezone, url_check, encryption.
All external dependencies (settings) are mocked.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from eventrelay.utils.paths import MISSING, get_path, set_path
from eventrelay.utils.timezone import ensure_utc, parse_timestamp
from eventrelay.utils.url_check import UrlNotAllowed, check_url


# ---------------------------------------------------------------------------
# 1. paths
# ---------------------------------------------------------------------------


class TestGetPath:
    DATA = {"customer": {"address": {"city": "Austin"}}, "items": [{"sku": "A"}, {"sku": "B"}, {}]}

    def test_nested(self):
        assert get_path(self.DATA, "customer.address.city") == "Austin"

    def test_index(self):
        assert get_path(self.DATA, "items[1].sku") == "B"

    def test_fan_out_skips_missing(self):
        assert get_path(self.DATA, "items[].sku") == ["A", "B"]

    def test_missing(self):
        assert get_path(self.DATA, "customer.phone") is MISSING
        assert get_path(self.DATA, "items[9].sku", default=None) is None

    def test_invalid_path_returns_default(self):
        assert get_path(self.DATA, "items[x]", default="d") == "d"


class TestSetPath:
    def test_creates_intermediate_dicts(self):
        target: dict = {}
        set_path(target, "a.b.c", 1)
        assert target == {"a": {"b": {"c": 1}}}

    def test_index_pads_list(self):
        target: dict = {}
        set_path(target, "items[1].sku", "B")
        assert target == {"items": [{}, {"sku": "B"}]}

    def test_spread(self):
        target: dict = {}
        set_path(target, "tags[]", ["x", "y"])
        assert target == {"tags": ["x", "y"]}

    def test_huge_index_is_rejected(self):
        target: dict = {}
        with pytest.raises(ValueError, match="limit"):
            set_path(target, "items[999999999].sku", "B")
        assert target == {"items": []}


# ---------------------------------------------------------------------------
# 2. timezone
# ---------------------------------------------------------------------------


class TestTimezone:
    def test_naive_gets_utc(self):
        assert ensure_utc(datetime(2026, 1, 1)).tzinfo == timezone.utc

    def test_aware_is_converted(self):
        value = datetime(2026, 1, 1, 6, tzinfo=timezone(timedelta(hours=-6)))
        assert ensure_utc(value) == datetime(2026, 1, 1, 12, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [1767225600, 1767225600000, "2026-01-01T00:00:00Z", "2026-01-01T00:00:00+00:00"])
    def test_parse_timestamp_variants(self, value):
        assert parse_timestamp(value) == datetime(2026, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, True, "", "next tuesday", [1]])
    def test_parse_timestamp_garbage(self, value):
        assert parse_timestamp(value) is None


# ---------------------------------------------------------------------------
# 3. url_check
# ---------------------------------------------------------------------------


class TestCheckUrl:
    def test_public_url_allowed(self):
        url = "https://hooks.example.com/orders"
        assert check_url(url, enforce_https=True, block_private=True) == url

    @pytest.mark.parametrize("url", [
        "http://localhost/hook",
        "http://127.0.0.1:8080/hook",
        "http://10.1.2.3/hook",
        "http://192.168.0.10/hook",
        "http://169.254.169.254/latest/meta-data",
        "http://[::1]/hook",
        "http://[::ffff:127.0.0.1]/hook",
    ])
    def test_private_hosts_blocked(self, url):
        with pytest.raises(UrlNotAllowed):
            check_url(url, enforce_https=False, block_private=True)

    def test_private_allowed_when_policy_off(self):
        assert check_url("http://127.0.0.1/hook", enforce_https=False, block_private=False)

    def test_https_enforced(self):
        with pytest.raises(UrlNotAllowed, match="https"):
            check_url("http://hooks.example.com", enforce_https=True, block_private=True)

    @pytest.mark.parametrize("url", ["ftp://example.com/x", "hooks.example.com", "", "http:///path"])
    def test_malformed(self, url):
        with pytest.raises(UrlNotAllowed):
            check_url(url, enforce_https=False, block_private=True)


# ---------------------------------------------------------------------------
# 4. encryption
# ---------------------------------------------------------------------------


class TestEncryption:
    def test_no_key_stores_plaintext(self):
        mock_cfg = MagicMock()
        mock_cfg.encryption_key = ""
        with patch("eventrelay.config.get_settings", return_value=mock_cfg):
            from eventrelay.utils.encryption import encrypt_value
            assert encrypt_value("secret123") == "secret123"

    def test_round_trip(self):
        from cryptography.fernet import Fernet

        mock_cfg = MagicMock()
        mock_cfg.encryption_key = Fernet.generate_key().decode()
        with patch("eventrelay.config.get_settings", return_value=mock_cfg):
            from eventrelay.utils.encryption import decrypt_value, encrypt_value
            stored = encrypt_value("secret123")
            assert stored.startswith("enc:")
            assert decrypt_value(stored) == "secret123"

    def test_plaintext_passes_through_decrypt(self):
        from eventrelay.utils.encryption import decrypt_value
        assert decrypt_value("legacy-plaintext") == "legacy-plaintext"

    def test_encrypted_without_key_raises(self):
        mock_cfg = MagicMock()
        mock_cfg.encryption_key = ""
        with patch("eventrelay.config.get_settings", return_value=mock_cfg):
            from eventrelay.utils.encryption import decrypt_value
            with pytest.raises(ValueError):
                decrypt_value("enc:gAAAA")

    def test_wrong_key_raises(self):
        from cryptography.fernet import Fernet

        first, second = MagicMock(), MagicMock()
        first.encryption_key = Fernet.generate_key().decode()
        second.encryption_key = Fernet.generate_key().decode()
        from eventrelay.utils.encryption import decrypt_value, encrypt_value
        with patch("eventrelay.config.get_settings", return_value=first):
            stored = encrypt_value("secret123")
        with patch("eventrelay.config.get_settings", return_value=second):
            with pytest.raises(ValueError, match="decrypted"):
                decrypt_value(stored)
