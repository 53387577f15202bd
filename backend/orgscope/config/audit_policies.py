"""
Audit failure policy configuration loader.

Loads per-event-type overrides from config/audit_policies.yml. Each event
type resolves to one of two policies when its audit row cannot be written:

- block:    the audited action fails (regulated data access)
- continue: the event is written to the fallback logger and the action
            proceeds

Defaults live in orgscope.platform.audit.AUDITABLE_EVENTS; this file only
overrides them.

Usage:
    from orgscope.config.audit_policies import get_audit_policies_loader

    loader = get_audit_policies_loader()
    policy = loader.get_policy("record.viewed", default=AuditFailurePolicy.BLOCK)
"""

import enum
import logging
import os
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)


class AuditFailurePolicy(str, enum.Enum):
    BLOCK = "block"
    CONTINUE = "continue"


class AuditPoliciesLoader:
    """
    Thread-safe singleton loader for config/audit_policies.yml.
    """

    _instance: Optional["AuditPoliciesLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv("AUDIT_POLICIES_PATH")
        self._raw: Dict[str, Any] = {}
        self._overrides: Dict[str, AuditFailurePolicy] = {}
        self._default: Optional[AuditFailurePolicy] = None
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            Path(__file__).parent.parent.parent.parent / "config" / "audit_policies.yml",
            Path(os.getcwd()) / "config" / "audit_policies.yml",
            Path(os.getcwd()) / ".." / "config" / "audit_policies.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"audit_policies.yml not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            try:
                path = self._resolve_path()
                logger.info("Loading audit policies from %s", path)

                with open(path, "r") as f:
                    self._raw = yaml.safe_load(f) or {}
            except FileNotFoundError:
                logger.warning("audit_policies.yml not found, using registry defaults")
                self._raw = {}

            self._overrides = {}
            for event_type, value in (self._raw.get("events") or {}).items():
                self._overrides[str(event_type)] = self._parse_policy(event_type, value)

            default = self._raw.get("default_policy")
            self._default = self._parse_policy("default_policy", default) if default else None

            logger.info(
                "Loaded audit policies: overrides=%d, default=%s",
                len(self._overrides),
                self._default.value if self._default else None,
            )

    @staticmethod
    def _parse_policy(key: str, value: Any) -> AuditFailurePolicy:
        try:
            return AuditFailurePolicy(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Invalid audit policy {value!r} for {key!r}; expected 'block' or 'continue'"
            )

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    def get_policy(
        self,
        event_type: str,
        default: AuditFailurePolicy = AuditFailurePolicy.CONTINUE,
    ) -> AuditFailurePolicy:
        """
        Resolve the failure policy for an event type.

        Order: per-event override, file-wide default_policy, then the
        caller's default (the registry value).
        """
        if event_type in self._overrides:
            return self._overrides[event_type]
        if self._default is not None:
            return self._default
        return default


def get_audit_policies_loader(config_path: Optional[str] = None) -> AuditPoliciesLoader:
    """Return the singleton AuditPoliciesLoader."""
    return AuditPoliciesLoader(config_path)


def reset_audit_policies_loader() -> None:
    """Reset singleton (for tests only)."""
    AuditPoliciesLoader._instance = None
