"""Configuration loader for Consilium."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List
import os
import yaml

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "default.yaml"
USER_CONFIG_PATH = Path.home() / ".config" / "consilium" / "config.yaml"

DEFAULT_SYSTEM_PROMPT = (
    "You are a senior, highly experienced clinical diagnostician. Your task is to analyse "
    "and diagnose based on the patient record provided.\n\n"
    "You are taking part in a multi-specialist consultation and will see the opinions of "
    "other doctors. Consider their analysis, which may inform yours, but keep your own "
    "independent professional judgement.\n\n"
    "Your contributions must follow these principles:\n"
    "1. Rigour: base your analysis on medical knowledge and the case record.\n"
    "2. Independence: do not change your core view just to agree with others. Endorse and "
    "extend correct points; state clearly, with reasons, where you disagree.\n"
    "3. Patient focus: the only goal is the best plan for the patient.\n"
    "4. Brevity: state your core diagnosis, analysis and recommendations directly.\n\n"
    "Now give your view based on the case record and the discussion so far."
)

DEFAULT_SUMMARY_PROMPT = (
    "Based on the full consultation, write the final summary in the voice of a clinician: "
    "core diagnosis, supporting evidence, differential diagnosis, recommended investigations, "
    "treatment recommendations, follow-up plan and risk warnings."
)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(path: Path | None = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    if DEFAULT_CONFIG_PATH.exists():
        data = yaml.safe_load(DEFAULT_CONFIG_PATH.read_text()) or {}
    user_path = path or USER_CONFIG_PATH
    if user_path.exists():
        override = yaml.safe_load(user_path.read_text()) or {}
        data = _deep_merge(data, override)

    # Environment overrides - Server
    host = os.getenv("CONSILIUM_HOST")
    port = os.getenv("CONSILIUM_PORT")
    if host:
        data.setdefault("server", {})["host"] = host
    if port:
        try:
            data.setdefault("server", {})["port"] = int(port)
        except ValueError:
            pass

    # Environment overrides - Data directory
    data_dir = os.getenv("CONSILIUM_DATA_DIR")
    if data_dir:
        data["data_dir"] = data_dir

    # Environment overrides - Consultation
    call_timeout = os.getenv("CONSILIUM_CALL_TIMEOUT")
    if call_timeout:
        try:
            data.setdefault("consultation", {})["call_timeout_seconds"] = float(call_timeout)
        except ValueError:
            pass

    turn_order = os.getenv("CONSILIUM_TURN_ORDER")
    if turn_order in ("random", "fixed"):
        data.setdefault("consultation", {})["turn_order"] = turn_order

    # Environment overrides - Embeddings
    embedding_key = os.getenv("CONSILIUM_EMBEDDING_API_KEY")
    if embedding_key:
        data.setdefault("knowledge", {}).setdefault("embedding", {})["api_key"] = embedding_key

    return data


@dataclass
class Config:
    raw: Dict[str, Any]

    @property
    def server(self) -> Dict[str, Any]:
        return self.raw.get("server", {})

    @property
    def data_dir(self) -> Path:
        default = str(Path.home() / ".consilium")
        return Path(self.raw.get("data_dir", default)).expanduser()

    @property
    def consultation(self) -> Dict[str, Any]:
        return self.raw.get("consultation", {})

    @property
    def knowledge(self) -> Dict[str, Any]:
        return self.raw.get("knowledge", {})

    @property
    def providers(self) -> Dict[str, Any]:
        return self.raw.get("providers", {})

    @property
    def doctors(self) -> List[Dict[str, Any]]:
        return list(self.raw.get("doctors", []) or [])

    @property
    def call_timeout_seconds(self) -> float:
        """Timeout for a single doctor call in seconds. Default 60."""
        return float(self.consultation.get("call_timeout_seconds", 60))

    @property
    def pause_poll_seconds(self) -> float:
        return float(self.consultation.get("pause_poll_seconds", 0.1))

    @property
    def settings(self) -> Dict[str, Any]:
        cfg = self.consultation
        return {
            "global_system_prompt": cfg.get("global_system_prompt") or DEFAULT_SYSTEM_PROMPT,
            "summary_prompt": cfg.get("summary_prompt") or DEFAULT_SUMMARY_PROMPT,
            "turn_order": cfg.get("turn_order", "random"),
            "max_rounds_without_elimination": int(cfg.get("max_rounds_without_elimination", 3)),
        }

    @property
    def chunk_max_chars(self) -> int:
        return int(self.knowledge.get("chunk_max_chars", 800))


def get_config() -> Config:
    return Config(load_config())
