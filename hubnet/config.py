# hubnet/config.py
from typing import Dict, List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="HUBNET_", env_file=".env", extra="ignore")

    # Database
    DATABASE_URL: str = "sqlite:///./hubnet.db"

    # Fernet key used to encrypt private keys at rest.
    # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    ENCRYPTION_KEY: str = ""

    # Token for the admin API (X-Admin-Token header)
    ADMIN_SECRET: str = "change-me-admin-token"

    # Address space hub networks are carved from (one /24 per hub)
    HUB_NETWORK_SPACE: str = "10.0.0.0/8"

    # Default UDP port per hub type, falls back to the allocation range below
    HUB_TYPE_PORTS: Dict[str, int] = {
        "workstation": 51820,
        "logging": 51821,
        "gateway": 51822,
    }
    LISTEN_PORT_RANGE_START: int = 52000
    LISTEN_PORT_RANGE_END: int = 53000

    # Remote layout
    WIREGUARD_CONFIG_DIR: str = "/etc/wireguard"
    WIREGUARD_BACKUP_DIR: str = "/etc/wireguard/backup"

    # SSH transport
    SSH_BINARY: str = "ssh"
    SSH_USER: str = "root"
    SSH_CONNECT_TIMEOUT: int = 10
    REMOTE_COMMAND_TIMEOUT: float = 30.0

    # Logging hub
    LOG_INGEST_PORT: int = 5514
    LOG_RETENTION_DAYS: int = 90

    # Orchestration
    MAX_PARALLEL_DEPLOYMENTS: int = 4

    # A peer is considered connected if it handshaked within this many seconds
    HANDSHAKE_TIMEOUT: int = 180

    # DNS pushed to spoke client configs
    DNS_SERVERS: List[str] = ["1.1.1.1", "8.8.8.8"]

    LOG_LEVEL: str = "INFO"


settings = Settings()
