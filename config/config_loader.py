"""Load settings.yaml into typed dataclasses. Resolves credentials from the environment."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from comet_search.providers.base import CompletionOptions

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"


@dataclass
class ModelConfig:
    name: str                  # backend id, e.g. "kimi-k2"
    sdk: str                   # "openai", "anthropic" or "gemini"
    model: str
    api_key_env: str | None    # None for local backends that need no key
    timeout_sec: int
    max_tokens: int
    display_name: str = ""
    provider_kind: str = "hosted"
    base_url: str | None = None
    stream: bool = False


@dataclass
class SearchConfig:
    base_url: str
    api_key_env: str
    timeout_sec: int
    mode: str = "deep"
    modes: dict[str, int] = field(default_factory=lambda: {"quick": 3, "deep": 10, "reasoning": 5})

    @property
    def result_count(self) -> int:
        return self.modes.get(self.mode, 10)


@dataclass
class EnrichmentConfig:
    base_url: str
    timeout_sec: int
    max_sources: int = 3
    api_key_env: str | None = None


@dataclass
class ResearchConfig:
    model: str
    max_sub_queries: int = 5
    max_gap_queries: int = 2
    max_source_chars: int = 2000
    analyze_pause_sec: float = 0.0


@dataclass
class CouncilConfig:
    synthesizer: str
    default_panel: list[str] = field(default_factory=list)
    min_backends: int = 2
    max_backends: int = 3


@dataclass
class InboxConfig:
    dir: Path
    archive_dir: Path


@dataclass
class ResearchPrompts:
    plan_system: str
    plan: str
    summary_system: str
    summary: str
    gap_system: str
    gap: str
    synthesis_system: str
    synthesis: str


@dataclass
class CouncilPrompts:
    answer_system: str
    consensus_system: str
    consensus: str


@dataclass
class AppConfig:
    output_dir: Path
    search: SearchConfig
    enrichment: EnrichmentConfig
    research: ResearchConfig
    council: CouncilConfig
    inbox: InboxConfig
    models: dict[str, ModelConfig]
    research_prompts: ResearchPrompts
    council_prompts: CouncilPrompts
    completion: dict[str, CompletionOptions] = field(default_factory=dict)

    def options_for(self, purpose: str) -> CompletionOptions:
        return self.completion.get(purpose, CompletionOptions())


@dataclass
class Credentials:
    """API keys keyed by environment-variable name. Passed explicitly to engines."""

    api_keys: dict[str, str] = field(default_factory=dict)

    def get(self, env_name: str | None) -> str:
        if not env_name:
            return ""
        return self.api_keys.get(env_name, "").strip()

    def has_key_for(self, model_cfg: ModelConfig) -> bool:
        return model_cfg.api_key_env is None or bool(self.get(model_cfg.api_key_env))


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    search_raw = raw["search"]
    search = SearchConfig(
        base_url=str(search_raw["base_url"]),
        api_key_env=str(search_raw["api_key_env"]),
        timeout_sec=int(search_raw["timeout_sec"]),
        mode=str(search_raw.get("mode", "deep")),
        modes={str(k): int(v) for k, v in search_raw.get("modes", {"deep": 10}).items()},
    )

    enrich_raw = raw["enrichment"]
    enrichment = EnrichmentConfig(
        base_url=str(enrich_raw["base_url"]),
        timeout_sec=int(enrich_raw["timeout_sec"]),
        max_sources=int(enrich_raw.get("max_sources", 3)),
        api_key_env=enrich_raw.get("api_key_env"),
    )

    research_raw = raw["research"]
    research = ResearchConfig(
        model=str(research_raw["model"]),
        max_sub_queries=int(research_raw.get("max_sub_queries", 5)),
        max_gap_queries=int(research_raw.get("max_gap_queries", 2)),
        max_source_chars=int(research_raw.get("max_source_chars", 2000)),
        analyze_pause_sec=float(research_raw.get("analyze_pause_sec", 0.0)),
    )

    council_raw = raw["council"]
    council = CouncilConfig(
        synthesizer=str(council_raw["synthesizer"]),
        default_panel=list(council_raw.get("default_panel", [])),
        min_backends=int(council_raw.get("min_backends", 2)),
        max_backends=int(council_raw.get("max_backends", 3)),
    )

    inbox_raw = raw.get("inbox", {})
    inbox = InboxConfig(
        dir=Path(inbox_raw.get("dir", "./inbox")),
        archive_dir=Path(inbox_raw.get("archive_dir", "./inbox/archive")),
    )

    prompts_raw = raw["prompts"]
    research_prompts = ResearchPrompts(**{k: str(v) for k, v in prompts_raw["research"].items()})
    council_prompts = CouncilPrompts(**{k: str(v) for k, v in prompts_raw["council"].items()})

    completion = {
        purpose: CompletionOptions(
            temperature=float(opts["temperature"]),
            max_tokens=int(opts["max_tokens"]),
        )
        for purpose, opts in raw.get("completion", {}).items()
    }

    models: dict[str, ModelConfig] = {}
    for backend_id, model_raw in raw["models"].items():
        models[backend_id] = ModelConfig(
            name=backend_id,
            sdk=model_raw["sdk"],
            model=model_raw["model"],
            api_key_env=model_raw.get("api_key_env"),
            timeout_sec=int(model_raw["timeout_sec"]),
            max_tokens=int(model_raw["max_tokens"]),
            display_name=str(model_raw.get("display_name", backend_id)),
            provider_kind=str(model_raw.get("provider_kind", "hosted")),
            base_url=model_raw.get("base_url"),
            stream=bool(model_raw.get("stream", False)),
        )

    return AppConfig(
        output_dir=Path(raw["defaults"]["output_dir"]),
        search=search,
        enrichment=enrichment,
        research=research,
        council=council,
        inbox=inbox,
        models=models,
        research_prompts=research_prompts,
        council_prompts=council_prompts,
        completion=completion,
    )


def load_credentials(config: AppConfig) -> Credentials:
    """Read every API key the config names from os.environ.

    Logs which backends are usable; does not raise. Callers decide what a
    missing key means.
    """
    env_names = {config.search.api_key_env}
    if config.enrichment.api_key_env:
        env_names.add(config.enrichment.api_key_env)
    env_names.update(m.api_key_env for m in config.models.values() if m.api_key_env)

    credentials = Credentials(
        api_keys={n: os.environ[n].strip() for n in env_names if os.environ.get(n, "").strip()}
    )

    for backend_id, model_cfg in config.models.items():
        if credentials.has_key_for(model_cfg):
            logger.info("Backend available: %s", backend_id)
        else:
            logger.info(
                "Backend skipped (no API key): %s - set %s in .env",
                backend_id,
                model_cfg.api_key_env,
            )
    return credentials
