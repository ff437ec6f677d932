"""Tests for vmctl.utils module."""

from __future__ import annotations

import re
import threading
from unittest.mock import patch

import pytest

from vmctl.exceptions import ManagerError
from vmctl.utils import (
    atomic_write_text,
    find_free_port,
    generate_password,
    get_env,
    get_env_bool,
    hash_password,
    log,
    parse_int_env,
    port_open,
    random_mac,
    session_name_for,
    tail_text,
    validate_disk_size,
    validate_memory,
    validate_vm_name,
    wait_for_path,
)


class TestLog:
    def test_info_level(self, capsys):
        log("INFO", "test message")
        captured = capsys.readouterr()
        assert "[INFO]" in captured.out
        assert "test message" in captured.out

    def test_debug_suppressed_by_default(self, capsys):
        with patch("vmctl.utils._LOG_VERBOSE", False):
            log("DEBUG", "should not appear")
        assert capsys.readouterr().out == ""

    def test_debug_shown_when_verbose(self, capsys):
        with patch("vmctl.utils._LOG_VERBOSE", True):
            log("DEBUG", "details")
        assert "[DEBUG]" in capsys.readouterr().out


class TestGetEnv:
    def test_returns_value(self, monkeypatch):
        monkeypatch.setenv("TEST_VAR", "hello")
        assert get_env("TEST_VAR") == "hello"

    def test_returns_default(self, monkeypatch):
        monkeypatch.delenv("TEST_VAR", raising=False)
        assert get_env("TEST_VAR", "fallback") == "fallback"


class TestGetEnvBool:
    @pytest.mark.parametrize("value", ["1", "true", "yes", "on", "TRUE", "Yes"])
    def test_truthy_values(self, monkeypatch, value):
        monkeypatch.setenv("TEST_BOOL", value)
        assert get_env_bool("TEST_BOOL") is True

    @pytest.mark.parametrize("value", ["0", "false", "no", "off", "random"])
    def test_falsy_values(self, monkeypatch, value):
        monkeypatch.setenv("TEST_BOOL", value)
        assert get_env_bool("TEST_BOOL") is False

    def test_default_when_unset(self, monkeypatch):
        monkeypatch.delenv("TEST_BOOL", raising=False)
        assert get_env_bool("TEST_BOOL", True) is True


class TestParseIntEnv:
    def test_valid_value(self, monkeypatch):
        monkeypatch.setenv("MY_INT", "42")
        assert parse_int_env("MY_INT", "10") == 42

    def test_non_integer_raises(self, monkeypatch):
        monkeypatch.setenv("MY_INT", "abc")
        with pytest.raises(ManagerError, match="must be an integer"):
            parse_int_env("MY_INT", "10")

    def test_below_minimum_raises(self, monkeypatch):
        monkeypatch.setenv("MY_INT", "0")
        with pytest.raises(ManagerError, match=">= 1"):
            parse_int_env("MY_INT", "10")

    def test_above_maximum_raises(self, monkeypatch):
        monkeypatch.setenv("MY_INT", "99")
        with pytest.raises(ManagerError, match="<= 50"):
            parse_int_env("MY_INT", "10", max_val=50)


class TestValidators:
    @pytest.mark.parametrize("value", ["20G", "512M", "1T", "100"])
    def test_valid_disk_sizes(self, value):
        assert validate_disk_size(value) == value

    @pytest.mark.parametrize("value", ["", "20GB", "-1G", "big"])
    def test_invalid_disk_sizes(self, value):
        with pytest.raises(ManagerError, match="Invalid disk size"):
            validate_disk_size(value)

    @pytest.mark.parametrize("value", ["2G", "2048", "512m"])
    def test_valid_memory(self, value):
        assert validate_memory(value) == value

    def test_invalid_memory(self):
        with pytest.raises(ManagerError, match="Invalid memory"):
            validate_memory("2T")

    @pytest.mark.parametrize("name", ["t1", "web-01", "db.primary", "A_b"])
    def test_valid_vm_names(self, name):
        assert validate_vm_name(name) == name

    @pytest.mark.parametrize("name", ["", "-lead", "has space", "a/b", "x" * 64])
    def test_invalid_vm_names(self, name):
        with pytest.raises(ManagerError, match="Invalid VM name"):
            validate_vm_name(name)


class TestSessionName:
    def test_prefixed(self):
        assert session_name_for("t1") == "vm-t1"

    def test_dots_replaced(self):
        assert session_name_for("db.primary") == "vm-db-primary"


class TestMacAddresses:
    def test_random_mac_format(self):
        assert re.match(r"^52:54:00(:[0-9a-f]{2}){3}$", random_mac())


class TestPasswords:
    def test_generated_password_alphanumeric(self):
        password = generate_password(24)
        assert len(password) == 24
        assert password.isalnum()

    def test_hash_is_bcrypt(self):
        hashed = hash_password("secret")
        assert hashed.startswith("$2")
        assert "secret" not in hashed


class TestPorts:
    def test_find_free_port_in_range(self):
        port = find_free_port()
        assert 0 < port < 65536

    def test_port_open_false_for_unused_port(self):
        assert port_open("127.0.0.1", find_free_port(), timeout=0.2) is False


class TestAtomicWriteText:
    def test_creates_parent_and_writes(self, tmp_path):
        target = tmp_path / "nested" / "state.json"
        atomic_write_text(target, '{"a": 1}')
        assert target.read_text() == '{"a": 1}'

    def test_no_temp_files_left(self, tmp_path):
        target = tmp_path / "state.json"
        atomic_write_text(target, "one")
        atomic_write_text(target, "two")
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]
        assert target.read_text() == "two"

    def test_concurrent_writers_never_leave_partial_content(self, tmp_path):
        target = tmp_path / "state.json"
        payloads = [str(i) * 4096 for i in range(8)]

        def _writer(payload):
            for _ in range(10):
                atomic_write_text(target, payload)

        threads = [threading.Thread(target=_writer, args=(p,)) for p in payloads]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert target.read_text() in payloads


class TestTailText:
    def test_last_lines(self, tmp_path):
        path = tmp_path / "log"
        path.write_text("\n".join(str(i) for i in range(30)))
        assert tail_text(path, 3) == "27\n28\n29"

    def test_missing_file(self, tmp_path):
        assert tail_text(tmp_path / "missing") == ""


class TestWaitForPath:
    def test_existing_path(self, tmp_path):
        assert wait_for_path(tmp_path, timeout=0.1) is True

    def test_times_out(self, tmp_path):
        assert wait_for_path(tmp_path / "never", timeout=0.2, interval=0.05) is False
