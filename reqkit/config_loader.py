import os
import configparser
from typing import Dict, Optional

from pydantic import BaseModel, Field


class ClientConfig(BaseModel):
    base_url: str
    timeout: float = Field(default=10.0, gt=0)
    headers: Dict[str, str] = Field(default_factory=dict)


def load_config(env_section: Optional[str] = None, path: str = "config.ini") -> ClientConfig:
    """
    Return the client settings stored in a section of config.ini.

    Falls back to API_ENV="api" when env_section isn't provided.

        [api]
        uri = https://api.example.com
        timeout = 5

        [api.headers]
        Authorization = Bearer t

    Raises:
      - FileNotFoundError if the file can't be read
      - KeyError if the section is missing
      - ValueError if `uri` is missing/empty or `timeout` is not a positive number
    """
    cfg = configparser.ConfigParser()
    # keep header names as written
    cfg.optionxform = str
    if not cfg.read(path):
        raise FileNotFoundError(f"Couldn't find {path} in the current directory.")

    section = env_section or os.getenv("API_ENV", "api")
    if section not in cfg:
        raise KeyError(f"Section [{section}] not found in {path}.")

    uri = cfg.get(section, "uri", fallback="").strip().rstrip("/")
    if not uri:
        raise ValueError(f"[{section}] uri is empty in {path}.")

    try:
        timeout = cfg.getfloat(section, "timeout", fallback=10.0)
    except ValueError:
        raise ValueError(f"[{section}] timeout must be a number in {path}.") from None
    if timeout <= 0:
        raise ValueError(f"[{section}] timeout must be positive in {path}.")

    headers_section = f"{section}.headers"
    headers = dict(cfg.items(headers_section, raw=True)) if headers_section in cfg else {}

    return ClientConfig(base_url=uri, timeout=timeout, headers=headers)
