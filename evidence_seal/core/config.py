"""
Evidence Seal Configuration Management

Centralized configuration for the integrity and encryption pipeline.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .exceptions import ConfigurationError


class Environment(Enum):
    """Deployment environments."""
    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


SUPPORTED_HASH_ALGORITHMS = ("sha256", "sha384", "sha512", "blake2b")
SUPPORTED_ODD_NODE_POLICIES = ("promote", "duplicate")


@dataclass
class HashingConfig:
    """Content hashing configuration."""
    algorithm: str = "sha256"
    chunk_size: int = 1024 * 1024


@dataclass
class CipherConfig:
    """Symmetric encryption configuration."""
    algorithm: str = "AES-256-GCM"
    kdf_iterations: int = 200_000
    kdf_salt_prefix: str = "evidence-seal/v1"
    nonce_size: int = 12


@dataclass
class MerkleConfig:
    """Batch commitment configuration."""
    odd_node_policy: str = "promote"


@dataclass
class KeyStoreConfig:
    """Local key metadata store configuration."""
    backend: str = "memory"
    path: str = "~/.evidence_seal/keystore.json"


@dataclass
class LedgerConfig:
    """Ledger/proof collaborator configuration."""
    backend: str = "local"
    url: Optional[str] = None
    timeout: float = 10.0
    fallback_to_local: bool = True


@dataclass
class StorageConfig:
    """Upload/download collaborator configuration."""
    backend: str = "memory"
    path: str = "~/.evidence_seal/evidence"
    base_url: Optional[str] = None
    timeout: float = 60.0
    auth_token: Optional[str] = None


@dataclass
class AuditConfig:
    """Audit trail configuration."""
    enabled: bool = True
    storage_path: Optional[str] = None
    hmac_key_env: str = "EVIDENCE_SEAL_AUDIT_KEY"


@dataclass
class Config:
    """
    Main configuration class for Evidence Seal.

    Aggregates all subsystem configurations.
    """
    # Core settings
    environment: Environment = Environment.DEVELOPMENT
    base_path: str = field(default_factory=lambda: os.getcwd())

    # Subsystem configs
    hashing: HashingConfig = field(default_factory=HashingConfig)
    cipher: CipherConfig = field(default_factory=CipherConfig)
    merkle: MerkleConfig = field(default_factory=MerkleConfig)
    keystore: KeyStoreConfig = field(default_factory=KeyStoreConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)

    # Operational settings
    log_level: str = "INFO"
    json_logs: bool = False

    @classmethod
    def from_file(cls, config_path: str) -> "Config":
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to configuration YAML file

        Returns:
            Populated Config object
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Config file must contain a mapping: {config_path}"
            )

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """
        Create configuration from dictionary.

        Args:
            data: Configuration dictionary

        Returns:
            Populated Config object
        """
        config = cls()

        try:
            if "environment" in data:
                config.environment = Environment(data["environment"])
            if "base_path" in data:
                config.base_path = data["base_path"]

            if "hashing" in data:
                config.hashing = HashingConfig(**data["hashing"])
            if "cipher" in data:
                config.cipher = CipherConfig(**data["cipher"])
            if "merkle" in data:
                config.merkle = MerkleConfig(**data["merkle"])
            if "keystore" in data:
                config.keystore = KeyStoreConfig(**data["keystore"])
            if "ledger" in data:
                config.ledger = LedgerConfig(**data["ledger"])
            if "storage" in data:
                config.storage = StorageConfig(**data["storage"])
            if "audit" in data:
                config.audit = AuditConfig(**data["audit"])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        if "log_level" in data:
            config.log_level = data["log_level"]
        if "json_logs" in data:
            config.json_logs = bool(data["json_logs"])

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "environment": self.environment.value,
            "base_path": self.base_path,
            "hashing": {
                "algorithm": self.hashing.algorithm,
                "chunk_size": self.hashing.chunk_size,
            },
            "cipher": {
                "algorithm": self.cipher.algorithm,
                "kdf_iterations": self.cipher.kdf_iterations,
                "kdf_salt_prefix": self.cipher.kdf_salt_prefix,
                "nonce_size": self.cipher.nonce_size,
            },
            "merkle": {
                "odd_node_policy": self.merkle.odd_node_policy,
            },
            "keystore": {
                "backend": self.keystore.backend,
                "path": self.keystore.path,
            },
            "ledger": {
                "backend": self.ledger.backend,
                "url": self.ledger.url,
                "timeout": self.ledger.timeout,
                "fallback_to_local": self.ledger.fallback_to_local,
            },
            "storage": {
                "backend": self.storage.backend,
                "path": self.storage.path,
                "base_url": self.storage.base_url,
                "timeout": self.storage.timeout,
                # auth_token is never serialised
            },
            "audit": {
                "enabled": self.audit.enabled,
                "storage_path": self.audit.storage_path,
                "hmac_key_env": self.audit.hmac_key_env,
            },
            "log_level": self.log_level,
            "json_logs": self.json_logs,
        }

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.hashing.algorithm not in SUPPORTED_HASH_ALGORITHMS:
            errors.append(
                f"Unsupported hash algorithm: {self.hashing.algorithm}"
            )
        if self.hashing.chunk_size <= 0:
            errors.append("Hash chunk size must be positive")

        if self.cipher.algorithm != "AES-256-GCM":
            errors.append(f"Unsupported cipher algorithm: {self.cipher.algorithm}")
        if self.cipher.kdf_iterations < 1:
            errors.append("KDF iterations must be at least 1")
        if self.cipher.nonce_size != 12:
            errors.append("AES-GCM nonce size must be 12 bytes")

        if self.merkle.odd_node_policy not in SUPPORTED_ODD_NODE_POLICIES:
            errors.append(
                f"Unknown odd node policy: {self.merkle.odd_node_policy}"
            )

        if self.keystore.backend not in ("memory", "file"):
            errors.append(f"Unknown keystore backend: {self.keystore.backend}")

        if self.ledger.backend not in ("local", "http"):
            errors.append(f"Unknown ledger backend: {self.ledger.backend}")
        if self.ledger.backend == "http" and not self.ledger.url:
            errors.append("HTTP ledger backend requires a url")

        if self.storage.backend not in ("memory", "directory", "http"):
            errors.append(f"Unknown storage backend: {self.storage.backend}")
        if self.storage.backend == "http" and not self.storage.base_url:
            errors.append("HTTP storage backend requires a base_url")

        return errors
