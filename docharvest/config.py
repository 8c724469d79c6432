"""YAML config loader."""

import json
import os
from dataclasses import dataclass, field
from typing import Dict, List

import yaml

from .errors import ConfigError
from .models import ClientIdentity, Stage


@dataclass
class FetchConfig:
    timeout: float = 60.0
    connect_timeout: float = 15.0
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    max_backoff: float = 60.0
    jitter: float = 0.5
    min_interval: float = 2.0
    host_intervals: Dict[str, float] = field(default_factory=dict)
    user_agent: str = "docharvest/1.0 (+research crawler)"
    verify_tls: bool = True
    cookies: Dict[str, str] = field(default_factory=dict)
    cookie_file: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    max_bytes: int = 524288000


@dataclass
class PaginationConfig:
    suspicious_ceiling: int = 10
    uniform_streak: int = 2
    fingerprint_size: int = 5
    duplicate_retries: int = 2
    duplicate_retry_delay: float = 5.0
    max_pages: int = 10000


@dataclass
class SubdivisionConfig:
    alphabet: str = "abcdefghijklmnopqrstuvwxyz"
    max_length: int = 3


@dataclass
class StageConfig:
    max_attempts: int = 3
    listing_concurrency: int = 1
    detail_concurrency: int = 4
    document_concurrency: int = 4

    def concurrency_for(self, stage: Stage) -> int:
        return {
            Stage.LISTING: self.listing_concurrency,
            Stage.DETAIL: self.detail_concurrency,
            Stage.DOCUMENT: self.document_concurrency,
        }[stage]


@dataclass
class AppConfig:
    data_dir: str = "data"
    db_path: str = "harvest.db"
    log_dir: str = "logs"
    site: str = "sites/example.yaml"
    seeds: List[str] = field(default_factory=list)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    pagination: PaginationConfig = field(default_factory=PaginationConfig)
    subdivision: SubdivisionConfig = field(default_factory=SubdivisionConfig)
    stages: StageConfig = field(default_factory=StageConfig)

    def identity(self) -> ClientIdentity:
        """Build the client identity from config, env vars and the optional cookie file."""
        cookies = {k: os.path.expandvars(str(v)) for k, v in self.fetch.cookies.items()}
        if self.fetch.cookie_file:
            try:
                with open(self.fetch.cookie_file) as f:
                    cookies.update({k: str(v) for k, v in json.load(f).items()})
            except (OSError, ValueError) as e:
                raise ConfigError(f"Cannot read cookie file {self.fetch.cookie_file}: {e}")
        return ClientIdentity(
            user_agent=os.path.expandvars(self.fetch.user_agent),
            cookies=cookies,
            verify_tls=self.fetch.verify_tls,
            headers=dict(self.fetch.headers),
        )


def _section(cls, raw: dict):
    return cls(**{k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__})


def load_config(config_path: str = "config.yaml") -> AppConfig:
    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot load config {config_path}: {e}")

    return AppConfig(
        data_dir=raw.get("data_dir", "data"),
        db_path=raw.get("db_path", "harvest.db"),
        log_dir=raw.get("log_dir", "logs"),
        site=raw.get("site", "sites/example.yaml"),
        seeds=[str(s) for s in raw.get("seeds", [])],
        fetch=_section(FetchConfig, raw.get("fetch", {})),
        pagination=_section(PaginationConfig, raw.get("pagination", {})),
        subdivision=_section(SubdivisionConfig, raw.get("subdivision", {})),
        stages=_section(StageConfig, raw.get("stages", {})),
    )
