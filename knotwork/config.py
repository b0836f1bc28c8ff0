"""
Configuration management for knotwork stores.

The configuration is stored as a TOML file in the store directory. It
specifies which providers to use and the tuning parameters of the index,
search, linking and memory layers.
"""

import os
import tomllib
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w


CONFIG_FILENAME = "knotwork.toml"
CONFIG_VERSION = 1

DEFAULT_STORE_DIR = Path.home() / ".knotwork"


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class QuantizationSettings:
    reduced_dims: int = 8
    bits: int = 16
    reduction: str = "blockavg"
    # "shared" (one params set across the federation) or "project"
    scope: str = "shared"
    # Recompute automatically when more than this fraction of a new batch
    # falls outside current bounds. Disabled when auto_recompute is false.
    auto_recompute: bool = True
    recompute_threshold: float = 0.2
    # Minimum embeddings needed before bounds are built
    min_sample: int = 2


@dataclass
class SearchSettings:
    default_top_k: int = 20
    # First scan radius is 2^(key_bits - radius_headroom_bits); each widening
    # multiplies it by 2^radius_growth_bits
    radius_headroom_bits: int = 28
    max_radius_widenings: int = 2
    radius_growth_bits: int = 8
    candidate_multiplier: int = 5
    similarity_floor: float = 0.1
    freshness_max_boost: float = 0.2
    freshness_half_life_days: float = 30.0
    allow_embedding_fallback: bool = False


@dataclass
class FederationSettings:
    max_concurrent_searches: int = 3


@dataclass
class LinkingSettings:
    semantic_weight: float = 0.5
    ai_weight: float = 0.3
    lexical_weight: float = 0.1
    contextual_weight: float = 0.1
    similarity_threshold: float = 0.78
    suggest_top_k: int = 5
    max_cycle_traversal: int = 50
    max_history: int = 100
    batch_limit: int = 100
    # Chain discovery over existing links
    max_chain_depth: int = 3
    max_chains: int = 5
    max_chain_traversal: int = 500
    # Cross-project relation inference
    inference_depth: int = 2
    inference_threshold: float = 0.7
    max_inference_expansions: int = 50

    def weights(self) -> dict[str, float]:
        return {
            "semantic": self.semantic_weight,
            "ai": self.ai_weight,
            "lexical": self.lexical_weight,
            "contextual": self.contextual_weight,
        }


@dataclass
class MemorySettings:
    alpha: float = 0.7
    beta: float = 0.3
    half_life_hours: float = 72.0
    max_interactions: int = 1000


@dataclass
class ProviderSettings:
    timeout_seconds: float = 5.0
    embedding_dimension: int = 512


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    embedding: ProviderConfig = field(default_factory=lambda: ProviderConfig("hash"))
    generation: ProviderConfig = field(default_factory=lambda: ProviderConfig("template"))

    quantization: QuantizationSettings = field(default_factory=QuantizationSettings)
    search: SearchSettings = field(default_factory=SearchSettings)
    federation: FederationSettings = field(default_factory=FederationSettings)
    linking: LinkingSettings = field(default_factory=LinkingSettings)
    memory: MemorySettings = field(default_factory=MemorySettings)
    providers: ProviderSettings = field(default_factory=ProviderSettings)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


# Settings sections that map 1:1 onto TOML tables
_SECTIONS = {
    "quantization": QuantizationSettings,
    "search": SearchSettings,
    "federation": FederationSettings,
    "linking": LinkingSettings,
    "memory": MemorySettings,
    "providers": ProviderSettings,
}


def get_store_path(path: Optional[Path] = None) -> Path:
    """Resolve the store directory: explicit path, KNOTWORK_STORE_PATH, then ~/.knotwork."""
    if path is not None:
        return Path(path).expanduser()
    env = os.environ.get("KNOTWORK_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return DEFAULT_STORE_DIR


def detect_default_providers() -> dict[str, ProviderConfig]:
    """
    Detect the best default providers for the current environment.

    Priority:
    1. Ollama (if OLLAMA_HOST is set) - local-first
    2. OpenAI (if an API key is available)
    3. Fallback: deterministic hash embeddings + template generation

    Returns provider configs for: embedding, generation
    """
    has_ollama = bool(os.environ.get("OLLAMA_HOST"))
    has_openai_key = bool(
        os.environ.get("KNOTWORK_OPENAI_API_KEY") or
        os.environ.get("OPENAI_API_KEY")
    )

    if has_ollama:
        return {
            "embedding": ProviderConfig("ollama", {"model": "nomic-embed-text"}),
            "generation": ProviderConfig("ollama", {"model": "llama3.2"}),
        }
    if has_openai_key:
        return {
            "embedding": ProviderConfig("openai", {"model": "text-embedding-3-small", "dimensions": 512}),
            "generation": ProviderConfig("openai", {"model": "gpt-4o-mini"}),
        }
    return {
        "embedding": ProviderConfig("hash"),
        "generation": ProviderConfig("template"),
    }


def create_default_config(store_path: Path) -> StoreConfig:
    """Create a new config with auto-detected defaults."""
    providers = detect_default_providers()
    return StoreConfig(
        path=store_path,
        embedding=providers["embedding"],
        generation=providers["generation"],
    )


def _parse_section(cls, data: dict):
    """Build a settings dataclass, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    def parse_provider(section: dict, default: str) -> ProviderConfig:
        return ProviderConfig(
            name=section.get("name", default),
            params={k: v for k, v in section.items() if k != "name"},
        )

    sections = {
        name: _parse_section(cls, data.get(name, {}))
        for name, cls in _SECTIONS.items()
    }

    return StoreConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        embedding=parse_provider(data.get("embedding", {}), "hash"),
        generation=parse_provider(data.get("generation", {}), "template"),
        **sections,
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    def provider_to_dict(p: ProviderConfig) -> dict:
        d = {"name": p.name}
        d.update(p.params)
        return d

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "embedding": provider_to_dict(config.embedding),
        "generation": provider_to_dict(config.generation),
    }
    for name in _SECTIONS:
        data[name] = asdict(getattr(config, name))

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = create_default_config(store_path)
    save_config(config)
    return config
