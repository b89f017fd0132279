from unittest.mock import MagicMock

import pytest

import vault_exporter as ve


@pytest.fixture
def healthy_snapshot() -> ve.HealthSnapshot:
    return ve.HealthSnapshot(
        initialized=True,
        sealed=False,
        standby=False,
        version="1.2.3",
        cluster_name="c1",
        cluster_id="abc",
    )


@pytest.fixture
def fake_client(healthy_snapshot):
    client = MagicMock(spec=ve.VaultHealthClient)
    client.fetch_health.return_value = healthy_snapshot
    return client


@pytest.fixture
def logger():
    return MagicMock()
