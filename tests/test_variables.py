"""
Tests for the variable store — layering, immutability, secrets.
"""

from pathlib import Path

import pytest

from pipewright.core.config.variables import (
    SecretRef,
    VariableSet,
    environ_secret_resolver,
    load_layer,
    resolve,
)
from pipewright.core.errors import ConfigError


class TestResolve:
    def test_later_layer_wins(self):
        resolved = resolve([{"A": 1, "B": "x"}, {"B": "y"}])
        assert dict(resolved) == {"A": 1, "B": "y"}

    def test_type_mismatch(self):
        with pytest.raises(ConfigError) as exc:
            resolve([{"PORT": 8080}, {"PORT": "8080"}])
        assert exc.value.detail == "PORT"

    def test_none_does_not_mismatch(self):
        resolved = resolve([{"TLS": None}, {"TLS": True}])
        assert resolved["TLS"] is True

    def test_required_missing(self):
        with pytest.raises(ConfigError) as exc:
            resolve([{"A": 1}], required=["A", "REGISTRY"])
        assert exc.value.detail == "REGISTRY"

    def test_required_none_counts_as_missing(self):
        with pytest.raises(ConfigError):
            resolve([{"REGISTRY": None}], required=["REGISTRY"])

    def test_non_string_key(self):
        with pytest.raises(ConfigError):
            resolve([{1: "x"}])

    def test_secret_coerced(self):
        resolved = resolve([{"DB_PASSWORD": {"secret": "prod-db"}}])
        assert resolved["DB_PASSWORD"] == SecretRef("prod-db")

    def test_no_layers(self):
        assert len(resolve([])) == 0


class TestVariableSet:
    def test_immutable(self):
        variables = VariableSet({"A": 1})
        with pytest.raises(TypeError):
            variables["A"] = 2  # type: ignore[index]

    def test_source_mapping_not_shared(self):
        source = {"A": 1}
        variables = VariableSet(source)
        source["A"] = 2
        assert variables["A"] == 1

    def test_is_set(self):
        variables = VariableSet({"ON": True, "OFF": False, "EMPTY": "", "ZERO": 0})
        assert variables.is_set("ON")
        assert not variables.is_set("OFF")
        assert not variables.is_set("EMPTY")
        assert not variables.is_set("MISSING")
        assert variables.is_set("ZERO")

    def test_redacted_hides_secrets(self):
        variables = VariableSet({"TOKEN": SecretRef("api-token"), "HOST": "db"})
        assert variables.redacted() == {"HOST": "db", "TOKEN": "secret://api-token"}
        assert "secret://api-token" in repr(variables)
        assert variables.secret_names == ["TOKEN"]

    def test_environment_without_resolver_omits_secrets(self):
        variables = VariableSet({"TOKEN": SecretRef("t"), "DEBUG": True, "N": 3, "LIST": [1]})
        assert variables.as_environment() == {"DEBUG": "true", "N": "3"}

    def test_environment_with_resolver(self):
        variables = VariableSet({"TOKEN": SecretRef("t")})
        env = variables.as_environment(lambda name: f"value-of-{name}")
        assert env == {"TOKEN": "value-of-t"}

    def test_snapshot_keeps_secret_reference(self):
        variables = VariableSet({"TOKEN": SecretRef("api-token"), "PORT": 8080})
        assert variables.snapshot() == {"PORT": 8080, "TOKEN": {"secret": "api-token"}}
        assert VariableSet.from_snapshot(variables.snapshot())["TOKEN"] == SecretRef("api-token")


class TestLayerFiles:
    def test_load_layer(self, tmp_path: Path):
        path = tmp_path / "prod.yml"
        path.write_text("REPLICAS: 4\nDB_PASSWORD:\n  secret: prod-db\n")
        assert load_layer(path) == {"REPLICAS": 4, "DB_PASSWORD": {"secret": "prod-db"}}

    def test_empty_layer(self, tmp_path: Path):
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert load_layer(path) == {}

    def test_missing_layer(self, tmp_path: Path):
        with pytest.raises(ConfigError):
            load_layer(tmp_path / "nope.yml")

    def test_layer_not_mapping(self, tmp_path: Path):
        path = tmp_path / "list.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError):
            load_layer(path)


class TestSecretResolver:
    def test_reads_prefixed_env(self, monkeypatch):
        monkeypatch.setenv("PIPEWRIGHT_SECRET_PROD_DB_PASSWORD", "hunter2")
        assert environ_secret_resolver("prod-db.password") == "hunter2"

    def test_missing_secret(self, monkeypatch):
        monkeypatch.delenv("PIPEWRIGHT_SECRET_NOPE", raising=False)
        with pytest.raises(ConfigError) as exc:
            environ_secret_resolver("nope")
        assert exc.value.detail == "nope"
