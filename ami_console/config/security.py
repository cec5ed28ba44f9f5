"""
Security-critical configuration injection.

SECURITY POLICY:
- The AMI secret MUST NEVER be read from YAML files
- Credentials come from environment variables (or the command line / prompt)
- This separation prevents accidental credential exposure in version control
"""

import os
from typing import Any, Dict


def _is_nonempty_string(val: Any) -> bool:
    """True if val is a string with non-whitespace content."""
    return isinstance(val, str) and val.strip() != ""


def inject_ami_credentials(config_data: Dict[str, Any]) -> None:
    """
    Inject AMI credentials from environment variables.

    The username may come from YAML (it is not secret) but AMI_USERNAME wins.
    The secret comes ONLY from AMI_SECRET; any YAML value is discarded.

    Environment variables:
    - AMI_USERNAME
    - AMI_SECRET
    """
    ami_yaml = config_data.get('ami') if isinstance(config_data.get('ami'), dict) else {}
    ami_cfg = dict(ami_yaml)

    username = os.getenv("AMI_USERNAME")
    if _is_nonempty_string(username):
        ami_cfg['username'] = username.strip()
    elif not _is_nonempty_string(ami_cfg.get('username')):
        ami_cfg['username'] = None

    secret = os.getenv("AMI_SECRET")
    ami_cfg['secret'] = secret if _is_nonempty_string(secret) else None

    config_data['ami'] = ami_cfg
