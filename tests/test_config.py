import pytest

import vault_exporter as ve


def test_defaults() -> None:
    config = ve.load_config([], environ={})

    assert config == ve.ExporterConfig()
    assert config.listen_address == ":9410"
    assert config.metrics_path == "/metrics"
    assert config.insecure_ssl is False
    assert config.timeout == 60.0


def test_environment_defaults() -> None:
    config = ve.load_config(
        [],
        environ={
            "VAULT_ADDR": "https://vault.internal:8200",
            "VAULT_CACERT": "/etc/vault/ca.pem",
            "VAULT_SKIP_VERIFY": "true",
            "VAULT_CLIENT_TIMEOUT": "30s",
        },
    )

    assert config.vault_addr == "https://vault.internal:8200"
    assert config.tls_cacert == "/etc/vault/ca.pem"
    assert config.insecure_ssl is True
    assert config.timeout == 30.0


def test_flags() -> None:
    config = ve.load_config(
        [
            "--web.listen-address", "127.0.0.1:9999",
            "--web.telemetry-path", "/vault-metrics",
            "--vault-tls-client-cert", "/c.pem",
            "--vault-tls-client-key", "/k.pem",
            "--insecure-ssl",
            "--log.level", "debug",
        ],
        environ={},
    )

    assert config.listen_address == "127.0.0.1:9999"
    assert config.metrics_path == "/vault-metrics"
    assert config.tls_client_cert == "/c.pem"
    assert config.tls_client_key == "/k.pem"
    assert config.insecure_ssl is True
    assert config.log_level == "debug"


def test_precedence_flag_over_file_over_env(tmp_path) -> None:
    cfg = tmp_path / "vault_exporter.yml"
    cfg.write_text("vault_addr: https://from-file:8200\nmetrics_path: /from-file\ntimeout: 10\n")

    config = ve.load_config(
        ["--config.file", str(cfg), "--web.telemetry-path", "/from-flag"],
        environ={"VAULT_ADDR": "https://from-env:8200", "VAULT_CLIENT_TIMEOUT": "20"},
    )

    assert config.vault_addr == "https://from-file:8200"
    assert config.metrics_path == "/from-flag"
    assert config.timeout == 10.0


def test_config_file_from_environment(tmp_path) -> None:
    cfg = tmp_path / "vault_exporter.yml"
    cfg.write_text("insecure_ssl: yes\n")

    config = ve.load_config([], environ={"VAULT_EXPORTER_CONFIG": str(cfg)})

    assert config.insecure_ssl is True


def test_unknown_config_key(tmp_path) -> None:
    cfg = tmp_path / "vault_exporter.yml"
    cfg.write_text("targets: [a, b]\n")

    with pytest.raises(ve.ConfigError, match="targets"):
        ve.load_config(["--config.file", str(cfg)], environ={})


def test_missing_config_file(tmp_path) -> None:
    with pytest.raises(ve.ConfigError):
        ve.load_config(["--config.file", str(tmp_path / "nope.yml")], environ={})


@pytest.mark.parametrize(
    "argv",
    [
        ["--web.telemetry-path", "metrics"],
        ["--web.listen-address", "9410"],
        ["--vault-timeout", "soon"],
        ["--vault-timeout", "0"],
        ["--vault-timeout", "nan"],
        ["--vault-timeout", "inf"],
    ],
)
def test_invalid_values(argv) -> None:
    with pytest.raises(ve.ConfigError):
        ve.load_config(argv, environ={})


@pytest.mark.parametrize(
    "addr,expected",
    [
        (":9410", ("", 9410)),
        ("0.0.0.0:9410", ("0.0.0.0", 9410)),
        ("[::1]:9410", ("::1", 9410)),
    ],
)
def test_parse_listen_address(addr, expected) -> None:
    assert ve.parse_listen_address(addr) == expected


def test_silent_level_suppresses_errors() -> None:
    logger = ve.setup_logging("silent")
    assert not logger.isEnabledFor(40)
    logger = ve.setup_logging("error")
    assert logger.isEnabledFor(40)


@pytest.mark.parametrize("value", ["nan", "inf", "-inf"])
def test_non_finite_timeout_from_env_or_file(tmp_path, value) -> None:
    with pytest.raises(ve.ConfigError):
        ve.load_config([], environ={"VAULT_CLIENT_TIMEOUT": value})

    cfg = tmp_path / "vault_exporter.yml"
    cfg.write_text(f"timeout: {value}\n")
    with pytest.raises(ve.ConfigError):
        ve.load_config(["--config.file", str(cfg)], environ={})
