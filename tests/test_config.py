import pytest
from config import load_settings
from errors import ConfigError


def test_defaults(env):
    settings = load_settings(env)

    assert settings.blockchain == "yellowstone"
    assert settings.network == "datil_prod"
    assert settings.block_interval == 25000
    assert settings.batch_size == 100
    assert settings.start_block is None and settings.end_block is None
    assert settings.rpc_max_attempts == 2
    assert settings.sink == "csv"
    assert settings.checkpoint_backend == "local"
    assert settings.hold_checkpoint_on_failure is False


def test_blockchain_and_network_required():
    with pytest.raises(ConfigError, match="BLOCKCHAIN and NETWORK"):
        load_settings({"BLOCKCHAIN": "yellowstone"})


@pytest.mark.parametrize("key,value", [("BLOCKCHAIN", "ethereum"), ("NETWORK", "datil")])
def test_unknown_registry_keys(env, key, value):
    env[key] = value

    with pytest.raises(ConfigError):
        load_settings(env)


@pytest.mark.parametrize(
    "key,value",
    [
        ("BLOCK_INTERVAL", "abc"),
        ("BLOCK_INTERVAL", "0"),
        ("START_BLOCK", "-1"),
        ("RPC_MAX_ATTEMPTS", "0"),
        ("WINDOW_DELAY_SECONDS", "soon"),
        ("HOLD_CHECKPOINT_ON_FAILURE", "maybe"),
        ("SINK", "bigquery"),
    ],
)
def test_invalid_values(env, key, value):
    env[key] = value

    with pytest.raises(ConfigError, match=key):
        load_settings(env)


def test_end_before_start(env):
    env.update({"START_BLOCK": "100", "END_BLOCK": "50"})

    with pytest.raises(ConfigError, match="END_BLOCK"):
        load_settings(env)


def test_dune_sink_needs_credentials(env):
    env["SINK"] = "dune"

    with pytest.raises(ConfigError) as excinfo:
        load_settings(env)

    assert "DUNE_API_KEY" in str(excinfo.value)
    assert "DUNE_TABLE_NAME" in str(excinfo.value)


def test_gcs_needs_bucket(env):
    env["CHECKPOINT_BACKEND"] = "gcs"

    with pytest.raises(ConfigError, match="BUCKET_NAME"):
        load_settings(env)


def test_full_dune_config(env):
    env.update({
        "SINK": "dune",
        "CHECKPOINT_BACKEND": "dune",
        "DUNE_API_KEY": "secret",
        "DUNE_NAMESPACE": "lit",
        "DUNE_TABLE_NAME": "pkps",
        "DUNE_TABLE_NAME_END_BLOCK": "end_block",
        "DUNE_QUERY_ID_END_BLOCK": "42",
        "HOLD_CHECKPOINT_ON_FAILURE": "true",
    })

    settings = load_settings(env)

    assert settings.dune_namespace == "lit"
    assert settings.hold_checkpoint_on_failure is True
    assert "secret" not in repr(settings)


def test_settings_are_immutable(settings):
    with pytest.raises(AttributeError):
        settings.batch_size = 5

    changed = settings.replace(batch_size=5)
    assert changed.batch_size == 5
    assert settings.batch_size == 100
