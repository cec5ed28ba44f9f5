"""
Default value application for configuration.

This module handles:
- AMI endpoint defaults (host, port) with environment overrides
- Supervisor monitor endpoint override
- Logging level override
"""

import os
from typing import Any, Dict


def apply_ami_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply AMI endpoint defaults with environment variable overrides.

    Precedence: env > YAML > hardcoded defaults.

    Environment variables:
    - AMI_HOST (default: 127.0.0.1)
    - AMI_PORT (default: 5038)
    """
    ami_cfg = config_data.get('ami', {}) or {}

    host = os.getenv('AMI_HOST', '').strip()
    if host:
        ami_cfg['host'] = host
    ami_cfg.setdefault('host', '127.0.0.1')

    port_env = os.getenv('AMI_PORT', '').strip()
    if port_env:
        try:
            ami_cfg['port'] = int(port_env)
        except ValueError:
            # leave YAML / default in place; validate_config reports bad ports
            pass
    ami_cfg.setdefault('port', 5038)

    config_data['ami'] = ami_cfg


def apply_supervisor_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply the supervisor monitor endpoint override.

    Environment variables:
    - SUPERVISOR_ENDPOINT: dial string of the supervisor phone (e.g. PJSIP/9000)
    """
    supervisor_cfg = config_data.get('supervisor', {}) or {}
    endpoint = os.getenv('SUPERVISOR_ENDPOINT', '').strip()
    if endpoint:
        supervisor_cfg['endpoint'] = endpoint
    config_data['supervisor'] = supervisor_cfg


def apply_logging_defaults(config_data: Dict[str, Any]) -> None:
    """LOG_LEVEL env overrides logging.level."""
    logging_cfg = config_data.get('logging', {}) or {}
    level = os.getenv('LOG_LEVEL', '').strip()
    if level:
        logging_cfg['level'] = level.lower()
    logging_cfg.setdefault('level', 'info')
    config_data['logging'] = logging_cfg
