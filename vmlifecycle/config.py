"""
Connection and timing settings
"""

import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

import yaml

from .exceptions import ValidationError


ENV_PREFIX = 'VSPHERE_'
TRUE_VALUES = ('1', 'true', 'yes', 'on')


@dataclass
class LifecycleSettings:
    """Settings for talking to vCenter and pacing waits"""
    host: str
    username: str
    password: str
    port: int = 443
    disable_ssl_verification: bool = False
    task_timeout: Optional[float] = 300.0
    task_poll_interval: float = 1.0
    event_poll_interval: float = 1.0
    guest_net_poll_interval: float = 5.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LifecycleSettings':
        known = {f.name: f for f in fields(cls)}
        unknown = set(data) - set(known)
        if unknown:
            raise ValidationError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
        missing = [name for name in ('host', 'username', 'password') if not data.get(name)]
        if missing:
            raise ValidationError(f"Missing required setting(s): {', '.join(missing)}")
        return cls(**{name: _coerce(known[name].type, value) for name, value in data.items()})

    @classmethod
    def from_yaml(cls, path: str, environ: Optional[Dict[str, str]] = None) -> 'LifecycleSettings':
        """Load settings from YAML; VSPHERE_* environment variables win"""
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValidationError(f"{path}: expected a mapping at the top level")
        data.update(_from_environment(environ))
        return cls.from_dict(data)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'LifecycleSettings':
        return cls.from_dict(_from_environment(environ))


def _from_environment(environ: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    environ = os.environ if environ is None else environ
    names = {f.name for f in fields(LifecycleSettings)}
    values = {}
    for key, value in environ.items():
        if key.startswith(ENV_PREFIX):
            name = key[len(ENV_PREFIX):].lower()
            if name in names:
                values[name] = value
    return values


def _coerce(annotation, value):
    """Convert string values (from the environment) to the field type"""
    if not isinstance(value, str):
        return value
    if annotation in (bool, 'bool'):
        return value.strip().lower() in TRUE_VALUES
    if annotation in (int, 'int'):
        return int(value)
    if annotation in (float, 'float', Optional[float], 'Optional[float]'):
        return float(value)
    return value
