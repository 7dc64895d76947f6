import os
from types import MappingProxyType
from errors import ConfigError

# --- DUNE ---
DUNE_API_URL = "https://api.dune.com/api"
# GET  /v1/query/{query_id}/results         -> {"result": {"rows": [...]}}
# POST /v1/query/{query_id}/execute
# POST /v1/table/create
# POST /v1/table/upload/csv
# POST /v1/table/{namespace}/{table_name}/insert

# ---------------- DEFAULTS ----------------
BLOCK_INTERVAL = 25000       # Blocks per eth_getLogs window
BATCH_SIZE = 100             # Blocks advanced per run (throttle, not chain head)
WINDOW_DELAY_SECONDS = 2.0   # Courtesy pause for the RPC provider
RPC_MAX_ATTEMPTS = 2
RPC_BACKOFF_SECONDS = 1.0
CHECKPOINT_MAX_ATTEMPTS = 3
HTTP_TIMEOUT = 30

CSV_PATH = "results.csv"
CHECKPOINT_PATH = "state/checkpoints.json"
GCS_PREFIX = "pkp_mints"

SINKS = ("csv", "gcs", "dune")
CHECKPOINT_BACKENDS = ("local", "gcs", "dune")

# Sink / checkpoint column layouts
EVENT_COLS = ["blockchain", "network", "token_id", "eth_address"]
CSV_FILE_HEADER = ["Blockchain", "Network", "Token ID", "ETH Address"]
CHECKPOINT_COLS = ["blockchain", "end_block", "network"]

EVENT_TABLE_SCHEMA = [
    {"name": "blockchain", "type": "varchar"},
    {"name": "network", "type": "varchar"},
    {"name": "token_id", "type": "varchar"},
    {"name": "eth_address", "type": "varchar"},
]
CHECKPOINT_TABLE_SCHEMA = [
    {"name": "blockchain", "type": "varchar"},
    {"name": "network", "type": "varchar"},
    {"name": "end_block", "type": "integer"},
]


# --- REGISTRY DEFINITIONS ---
class ChainDef:
    def __init__(self, name, rpc_url, chain_id):
        self.name = name
        self.rpc_url = rpc_url
        self.chain_id = chain_id

    def __repr__(self):
        return f"ChainDef({self.name!r}, chain_id={self.chain_id})"


class NetworkDef:
    def __init__(self, name, address):
        self.name = name
        self.address = address

    def __repr__(self):
        return f"NetworkDef({self.name!r}, {self.address})"


BLOCKCHAINS = MappingProxyType({
    "chronicle": ChainDef("chronicle", "https://chain-rpc.litprotocol.com/replica-http", 175177),
    "yellowstone": ChainDef("yellowstone", "https://yellowstone-rpc.litprotocol.com/", 175188),
})

# PKP NFT contract per network
NETWORKS = MappingProxyType({
    "cayenne": NetworkDef("cayenne", "0x58582b93d978F30b4c4E812A16a7b31C035A69f7"),
    "habanero": NetworkDef("habanero", "0x80182Ec46E3dD7Bb8fa4f89b48d303bD769465B2"),
    "manzano": NetworkDef("manzano", "0x3c3ad2d238757Ea4AF87A8624c716B11455c1F9A"),
    "serrano": NetworkDef("serrano", "0x8F75a53F65e31DD0D2e40d0827becAaE2299D111"),
    "datil_prod": NetworkDef("datil_prod", "0x487A9D096BB4B7Ac1520Cb12370e31e677B175EA"),
    "datil_dev": NetworkDef("datil_dev", "0x02C4242F72d62c8fEF2b2DB088A35a9F4ec741C7"),
    "datil_test": NetworkDef("datil_test", "0x6a0f439f064B7167A8Ea6B22AcC07ae5360ee0d1"),
})


class Registry:
    """Immutable lookup of RPC endpoints and contract addresses."""

    def __init__(self, blockchains=BLOCKCHAINS, networks=NETWORKS):
        self.blockchains = MappingProxyType(dict(blockchains))
        self.networks = MappingProxyType(dict(networks))

    def chain(self, name):
        try:
            return self.blockchains[name]
        except KeyError:
            raise ConfigError(
                f"Invalid blockchain specified: {name!r} (known: {', '.join(self.blockchains)})"
            ) from None

    def network(self, name):
        try:
            return self.networks[name]
        except KeyError:
            raise ConfigError(
                f"Invalid network specified: {name!r} (known: {', '.join(self.networks)})"
            ) from None


def build_registry(env=None):
    """Registry with RPC URL overrides (<BLOCKCHAIN>_RPC_URL) applied."""
    env = os.environ if env is None else env
    chains = {}
    for name, chain in BLOCKCHAINS.items():
        override = env.get(f"{name.upper()}_RPC_URL")
        chains[name] = ChainDef(name, override or chain.rpc_url, chain.chain_id)
    return Registry(chains, NETWORKS)


# ---------------- SETTINGS ----------------
class Settings:
    """Validated run configuration. Attributes are read-only after load."""

    def __init__(self, **values):
        for key, value in values.items():
            object.__setattr__(self, key, value)

    def __setattr__(self, key, value):
        raise AttributeError("Settings are immutable")

    def replace(self, **changes):
        values = dict(self.__dict__)
        values.update(changes)
        return Settings(**values)

    def __repr__(self):
        hidden = {"dune_api_key"}
        shown = ", ".join(
            f"{k}={'***' if k in hidden and v else v!r}" for k, v in sorted(self.__dict__.items())
        )
        return f"Settings({shown})"


def _get_int(env, key, default=None, minimum=None):
    raw = env.get(key)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        value = int(str(raw).strip())
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None
    if minimum is not None and value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


def _get_float(env, key, default):
    raw = env.get(key)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        value = float(str(raw).strip())
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from None
    if value < 0:
        raise ConfigError(f"{key} must be >= 0, got {value}")
    return value


def _get_bool(env, key, default=False):
    raw = env.get(key)
    if raw is None or str(raw).strip() == "":
        return default
    value = str(raw).strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{key} must be a boolean, got {raw!r}")


def _get_choice(env, key, default, choices):
    value = (env.get(key) or default).strip().lower()
    if value not in choices:
        raise ConfigError(f"{key} must be one of {', '.join(choices)}, got {value!r}")
    return value


def load_settings(env=None, registry=None):
    """Reads and validates settings from an environment mapping.

    Raises ConfigError before any network I/O happens.
    """
    env = os.environ if env is None else env
    registry = registry or build_registry(env)

    blockchain = (env.get("BLOCKCHAIN") or "").strip()
    network = (env.get("NETWORK") or "").strip()
    if not blockchain or not network:
        raise ConfigError("Both BLOCKCHAIN and NETWORK must be specified in the environment variables.")
    registry.chain(blockchain)
    registry.network(network)

    settings = Settings(
        blockchain=blockchain,
        network=network,
        block_interval=_get_int(env, "BLOCK_INTERVAL", BLOCK_INTERVAL, minimum=1),
        batch_size=_get_int(env, "BATCH_SIZE", BATCH_SIZE, minimum=0),
        start_block=_get_int(env, "START_BLOCK", None, minimum=0),
        end_block=_get_int(env, "END_BLOCK", None, minimum=0),
        window_delay=_get_float(env, "WINDOW_DELAY_SECONDS", WINDOW_DELAY_SECONDS),
        rpc_max_attempts=_get_int(env, "RPC_MAX_ATTEMPTS", RPC_MAX_ATTEMPTS, minimum=1),
        rpc_backoff=_get_float(env, "RPC_BACKOFF_SECONDS", RPC_BACKOFF_SECONDS),
        hold_checkpoint_on_failure=_get_bool(env, "HOLD_CHECKPOINT_ON_FAILURE", False),
        checkpoint_max_attempts=_get_int(env, "CHECKPOINT_MAX_ATTEMPTS", CHECKPOINT_MAX_ATTEMPTS, minimum=1),
        sink=_get_choice(env, "SINK", "csv", SINKS),
        checkpoint_backend=_get_choice(env, "CHECKPOINT_BACKEND", "local", CHECKPOINT_BACKENDS),
        csv_path=env.get("CSV_PATH") or CSV_PATH,
        checkpoint_path=env.get("CHECKPOINT_PATH") or CHECKPOINT_PATH,
        bucket_name=env.get("BUCKET_NAME"),
        gcs_prefix=env.get("GCS_PREFIX") or GCS_PREFIX,
        dune_api_url=env.get("DUNE_API_URL") or DUNE_API_URL,
        dune_api_key=env.get("DUNE_API_KEY"),
        dune_namespace=env.get("DUNE_NAMESPACE"),
        dune_table_name=env.get("DUNE_TABLE_NAME"),
        dune_query_id=env.get("DUNE_QUERY_ID"),
        dune_table_name_end_block=env.get("DUNE_TABLE_NAME_END_BLOCK"),
        dune_query_id_end_block=env.get("DUNE_QUERY_ID_END_BLOCK"),
        http_timeout=_get_float(env, "HTTP_TIMEOUT", HTTP_TIMEOUT),
    )
    validate_settings(settings)
    return settings


def validate_settings(settings):
    """Cross-field checks. Also run after CLI overrides are applied."""
    if (
        settings.start_block is not None
        and settings.end_block is not None
        and settings.end_block < settings.start_block
    ):
        raise ConfigError(f"END_BLOCK ({settings.end_block}) is before START_BLOCK ({settings.start_block})")

    required = []
    if "dune" in (settings.sink, settings.checkpoint_backend):
        required += [("DUNE_API_KEY", settings.dune_api_key), ("DUNE_NAMESPACE", settings.dune_namespace)]
    if settings.sink == "dune":
        required += [("DUNE_TABLE_NAME", settings.dune_table_name)]
    if settings.checkpoint_backend == "dune":
        required += [
            ("DUNE_TABLE_NAME_END_BLOCK", settings.dune_table_name_end_block),
            ("DUNE_QUERY_ID_END_BLOCK", settings.dune_query_id_end_block),
        ]
    if "gcs" in (settings.sink, settings.checkpoint_backend):
        required += [("BUCKET_NAME", settings.bucket_name)]

    missing = sorted({key for key, value in required if not value})
    if missing:
        raise ConfigError(f"Missing required configuration: {', '.join(missing)}")
    return settings
