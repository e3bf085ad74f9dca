"""
Tests for command line configuration mutations
"""

import os

import pytest
import yaml

from webdisk.config import ConfigError, PersistenceError, default_config, load_config, save_config
from webdisk.models import Capability
from webdisk.mutator import ConfigMutator


@pytest.fixture()
def config_path(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "config.yaml"
    save_config(default_config(), path)
    return path


@pytest.fixture()
def mutator(config_path):
    return ConfigMutator(config_path)


def read_yaml(path):
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)


class TestHostSettings:

    def test_port(self, mutator, config_path):
        mutator.set_host("port", "9090")
        assert read_yaml(config_path)["port"] == 9090

    @pytest.mark.parametrize("value", ["0", "65536", "abc", "-1"])
    def test_invalid_port_leaves_file(self, mutator, config_path, value):
        before = config_path.read_bytes()
        with pytest.raises(ConfigError):
            mutator.set_host("port", value)
        assert config_path.read_bytes() == before

    def test_ip_address_and_domain(self, mutator, config_path):
        mutator.set_host("ip", "127.0.0.1")
        assert read_yaml(config_path)["ip"] == "127.0.0.1"

        mutator.set_host("ip", "files.example.com")
        assert read_yaml(config_path)["ip"] == "files.example.com"

    @pytest.mark.parametrize("value", ["999.1.1.1", "not a host", "::1"])
    def test_invalid_ip(self, mutator, value):
        with pytest.raises(ConfigError):
            mutator.set_host("ip", value)

    def test_ipv6(self, mutator, config_path):
        mutator.set_host("ipv6", "::1")
        assert read_yaml(config_path)["ipv6"] == "::1"

        mutator.set_host("ipv6", "[fe80::1]")
        assert read_yaml(config_path)["ipv6"] == "fe80::1"

    def test_ipv6_no_disables(self, mutator, config_path):
        config = mutator.set_host("ipv6", "no")
        assert not config.ipv6_enabled
        assert read_yaml(config_path)["ipv6"] == ""

    def test_invalid_ipv6(self, mutator):
        with pytest.raises(ConfigError):
            mutator.set_host("ipv6", "127.0.0.1")

    def test_cwd_must_exist(self, mutator, config_path, tmp_path):
        with pytest.raises(ConfigError):
            mutator.set_host("cwd", str(tmp_path / "missing"))

        (tmp_path / "share").mkdir()
        mutator.set_host("cwd", str(tmp_path / "share"))
        assert read_yaml(config_path)["cwd"] == str(tmp_path / "share")

    def test_unknown_key(self, mutator):
        with pytest.raises(ConfigError):
            mutator.set_host("tls", "on")


class TestWebDavMutations:

    def test_toggle(self, mutator, config_path):
        mutator.set_webdav_enabled(True)
        assert read_yaml(config_path)["webdav"]["enabled"] is True
        mutator.set_webdav_enabled(False)
        assert read_yaml(config_path)["webdav"]["enabled"] is False

    def test_missing_storage_root_is_created(self, mutator, config_path, tmp_path):
        gone = tmp_path / "gone"
        config_path.write_text(f"cwd: {gone.as_posix()}\n", encoding="utf-8")

        mutator.set_webdav_enabled(True)

        assert gone.is_dir()
        assert read_yaml(config_path)["webdav"]["enabled"] is True

    def test_unusable_storage_root_blocks_save(self, mutator, config_path, tmp_path):
        afile = tmp_path / "afile"
        afile.write_text("not a directory", encoding="utf-8")
        config_path.write_text(f"cwd: {afile.as_posix()}\n", encoding="utf-8")
        before = config_path.read_bytes()

        with pytest.raises(ConfigError, match="not a directory"):
            mutator.add_user("bob", "r", "pw")

        assert config_path.read_bytes() == before

    def test_add_user_with_generated_password(self, mutator, config_path):
        user = mutator.add_user("bob")

        assert len(user.password) == 8
        assert user.permissions == {Capability.READ}
        stored = read_yaml(config_path)["webdav"]["users"]["bob"]
        assert stored == {"password": user.password, "permissions": "r"}

    def test_add_user_with_password_and_permissions(self, mutator, config_path):
        mutator.add_user("carol", "xwr", "pw")
        stored = read_yaml(config_path)["webdav"]["users"]["carol"]
        assert stored == {"password": "pw", "permissions": "rwx"}

    def test_add_existing_user_fails(self, mutator, config_path):
        before = config_path.read_bytes()
        with pytest.raises(ConfigError):
            mutator.add_user("admin", "r", "x")
        assert config_path.read_bytes() == before

    @pytest.mark.parametrize("name", ["", "bo:b"])
    def test_add_invalid_name(self, mutator, name):
        with pytest.raises(ConfigError):
            mutator.add_user(name, "r", "pw")

    def test_add_invalid_permissions(self, mutator):
        with pytest.raises(ConfigError):
            mutator.add_user("dave", "rwz", "pw")

    def test_delete_user(self, mutator, config_path):
        mutator.delete_user("admin")
        assert read_yaml(config_path)["webdav"]["users"] == {}

    def test_delete_unknown_user(self, mutator):
        with pytest.raises(ConfigError):
            mutator.delete_user("ghost")

    def test_set_user_permissions_keeps_password(self, mutator, config_path):
        mutator.set_user("admin", "r")
        stored = read_yaml(config_path)["webdav"]["users"]["admin"]
        assert stored == {"password": "admin", "permissions": "r"}

    def test_set_user_with_password_creates(self, mutator, config_path):
        mutator.set_user("bob", "rw", "secret")
        stored = read_yaml(config_path)["webdav"]["users"]["bob"]
        assert stored == {"password": "secret", "permissions": "rw"}

    def test_set_unknown_user_without_password(self, mutator):
        with pytest.raises(ConfigError):
            mutator.set_user("ghost", "rw")

    def test_set_password(self, mutator, config_path):
        mutator.set_password("admin", "n3w")
        stored = read_yaml(config_path)["webdav"]["users"]["admin"]
        assert stored == {"password": "n3w", "permissions": "rwx"}

    def test_set_password_unknown_user(self, mutator):
        with pytest.raises(ConfigError):
            mutator.set_password("ghost", "pw")

    def test_empty_password_rejected(self, mutator):
        with pytest.raises(ConfigError):
            mutator.set_password("admin", "")


class TestDefaults:

    def test_missing_file_is_created(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        path = tmp_path / "sub" / "config.yaml"

        ConfigMutator(path).set_host("port", "8000")

        config = load_config(path)
        assert config.port == 8000
        assert config.webdav.users["admin"].password == "admin"

    def test_reset_default(self, mutator, config_path):
        mutator.set_host("port", "9999")
        mutator.add_user("bob", "rw", "pw")

        mutator.reset_default()

        assert load_config(config_path) == default_config()


class TestCrashSafety:
    """A failed write never damages the existing file"""

    def test_failed_fsync(self, mutator, config_path, tmp_path, monkeypatch):
        before = config_path.read_bytes()

        def broken_fsync(fd):
            raise OSError("disk on fire")

        monkeypatch.setattr(os, "fsync", broken_fsync)

        with pytest.raises(PersistenceError):
            mutator.set_host("port", "9090")

        assert config_path.read_bytes() == before
        assert [p.name for p in tmp_path.iterdir() if p.is_file()] == ["config.yaml"]

    def test_failed_replace(self, mutator, config_path, tmp_path, monkeypatch):
        before = config_path.read_bytes()

        def broken_replace(src, dst):
            raise OSError("rename failed")

        monkeypatch.setattr(os, "replace", broken_replace)

        with pytest.raises(PersistenceError):
            mutator.add_user("bob", "r", "pw")

        assert config_path.read_bytes() == before
        assert [p.name for p in tmp_path.iterdir() if p.is_file()] == ["config.yaml"]

    def test_interrupted_write(self, mutator, config_path, tmp_path, monkeypatch):
        before = config_path.read_bytes()

        def interrupted(fd):
            raise KeyboardInterrupt

        monkeypatch.setattr(os, "fsync", interrupted)

        with pytest.raises(KeyboardInterrupt):
            mutator.set_webdav_enabled(True)

        assert config_path.read_bytes() == before
        assert [p.name for p in tmp_path.iterdir() if p.is_file()] == ["config.yaml"]
