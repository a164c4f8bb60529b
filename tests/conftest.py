"""
Shared fixtures for webtier tests.
"""

import pytest

from webtier.datasources import StaticDataProvider
from webtier.stack import StackConfig

STATE_LOCATION = "s3://tf-state/stage/data-stores/mysql/terraform.tfstate"


@pytest.fixture
def webtier_home(tmp_path, monkeypatch):
    """Point WEBTIER_HOME at a temporary directory."""
    home = tmp_path / "home"
    monkeypatch.setenv("WEBTIER_HOME", str(home))
    return home


@pytest.fixture
def offline_provider():
    return StaticDataProvider(
        default_networks=["vpc-123"],
        subnets={"vpc-123": ["subnet-b", "subnet-a"]},
        states={
            STATE_LOCATION: {
                "outputs": {
                    "address": {"value": "10.0.0.5"},
                    "port": {"value": 5432},
                }
            }
        },
    )


def make_config(**overrides) -> StackConfig:
    base = dict(
        name="webservers-stage",
        region="us-east-2",
        server_port=8080,
        min_size=2,
        max_size=4,
        drain_timeout=30,
        db_remote_state={
            "bucket": "tf-state",
            "key": "stage/data-stores/mysql/terraform.tfstate",
            "region": "us-east-2",
        },
    )
    base.update(overrides)
    return StackConfig.model_validate(base)


@pytest.fixture
def stack_config():
    return make_config()


@pytest.fixture
def config_factory():
    """Build a StackConfig with selected fields overridden."""
    return make_config
