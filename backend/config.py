"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide a typed, immutable config object

Non-responsibilities:
- No orchestration logic
- No protocol constants
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from spec import LAN_MULTICAST_GROUP_V4, LAN_MULTICAST_PORT


def _optional_float(raw: str | None) -> float | None:
    if raw is None or raw.strip() == "":
        return None
    return float(raw)


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to the orchestrator factory and the HTTP surface.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str
    log_level: str

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    enable_json_logs: bool

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    device_id_path: str

    # ------------------------------------------------------------------
    # Tunnel engine
    # ------------------------------------------------------------------

    easytier_lib_path: str | None
    tun_device_name: str

    # ------------------------------------------------------------------
    # LAN discovery
    # ------------------------------------------------------------------

    lan_multicast_group: str
    lan_multicast_port: int
    lan_scan_timeout_s: float | None

    # ------------------------------------------------------------------
    # HTTP API
    # ------------------------------------------------------------------

    api_host: str
    api_port: int

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Raises:
            ValueError if a numeric variable cannot be parsed.
        """
        return AppConfig(
            env=os.environ.get("ENV", "dev"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),

            enable_json_logs=os.environ.get("ENABLE_JSON_LOGS", "1") == "1",

            device_id_path=os.path.expanduser(
                os.environ.get("DEVICE_ID_PATH", "~/.enchantnet/device_id")
            ),

            easytier_lib_path=os.environ.get("EASYTIER_LIB_PATH") or None,
            tun_device_name=os.environ.get("TUN_DEVICE_NAME", "enchantnet0"),

            lan_multicast_group=os.environ.get(
                "LAN_MULTICAST_GROUP", LAN_MULTICAST_GROUP_V4
            ),
            lan_multicast_port=int(
                os.environ.get("LAN_MULTICAST_PORT", str(LAN_MULTICAST_PORT))
            ),
            lan_scan_timeout_s=_optional_float(os.environ.get("LAN_SCAN_TIMEOUT_S")),

            api_host=os.environ.get("API_HOST", "0.0.0.0"),
            api_port=int(os.environ.get("API_PORT", "8000")),
        )
