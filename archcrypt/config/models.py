# archcrypt/config/models.py

import re
from pathlib import Path
from typing import Any, Dict, Optional

import tomlkit
import typer
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

# <integer><unit>, unit M or G, as accepted by lvcreate -L
SIZE_PATTERN = re.compile(r"^[1-9][0-9]*[MG]$")
USERNAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
HOSTNAME_LABEL_PATTERN = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")

UNIT_BYTES = {"M": 1024 ** 2, "G": 1024 ** 3}


def size_to_bytes(size: str) -> int:
    """Converts a validated '<integer><unit>' size into bytes (binary units, like LVM)."""
    if not SIZE_PATTERN.match(size):
        raise ValueError(f"Invalid size '{size}'. Expected <integer><unit> with unit M or G, e.g. '20G'.")
    return int(size[:-1]) * UNIT_BYTES[size[-1]]


class ProvisioningConfig(BaseModel):
    """
    Everything a provisioning run needs, validated up front and passed by value
    to every stage. Secrets are SecretStr so they never render in reprs,
    summaries or logs.
    """
    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True, hide_input_in_errors=True)

    hostname: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: SecretStr
    device: str = Field(min_length=1)
    root_size: str = Field(min_length=1)
    swap_size: str = Field(min_length=1)
    luks_passphrase: SecretStr

    timezone: str = Field("America/Los_Angeles", min_length=1)
    locale: str = Field("en_US.UTF-8", min_length=1)
    mapper_name: str = Field("cryptlvm", min_length=1)
    volume_group: str = Field("vg0", min_length=1)
    mount_root: str = Field("/mnt", min_length=1)

    @field_validator("password", "luks_passphrase")
    @classmethod
    def _secret_not_empty(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value():
            raise ValueError("must not be empty")
        return value

    @field_validator("password")
    @classmethod
    def _password_single_line(cls, value: SecretStr) -> SecretStr:
        # chpasswd reads one user:password record per line
        if any(c in value.get_secret_value() for c in "\r\n"):
            raise ValueError("must not contain line breaks")
        return value

    @field_validator("root_size", "swap_size")
    @classmethod
    def _valid_size(cls, value: str) -> str:
        size_to_bytes(value)
        return value

    @field_validator("username")
    @classmethod
    def _valid_username(cls, value: str) -> str:
        if not USERNAME_PATTERN.match(value):
            raise ValueError(f"'{value}' is not a valid user name")
        return value

    @field_validator("hostname")
    @classmethod
    def _valid_hostname(cls, value: str) -> str:
        if len(value) > 253 or not all(HOSTNAME_LABEL_PATTERN.match(label) for label in value.split(".")):
            raise ValueError(f"'{value}' is not a valid hostname")
        return value

    @field_validator("device", "mount_root")
    @classmethod
    def _absolute_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"'{value}' must be an absolute path")
        return value.rstrip("/") or "/"

    @field_validator("locale")
    @classmethod
    def _valid_locale(cls, value: str) -> str:
        # locale.gen lines are "<locale> <charmap>", e.g. "en_US.UTF-8 UTF-8"
        if "." not in value or " " in value:
            raise ValueError(f"'{value}' must look like 'en_US.UTF-8'")
        return value

    @property
    def root_bytes(self) -> int:
        return size_to_bytes(self.root_size)

    @property
    def swap_bytes(self) -> int:
        return size_to_bytes(self.swap_size)

    @classmethod
    def read_config_file(cls, path: Path) -> Dict[str, Any]:
        """Reads a TOML file into a plain dict without validating it."""
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ValueError(f"Error reading configuration file: {e}")

        try:
            data = tomlkit.parse(content)
        except Exception as e:
            raise ValueError(f"Invalid TOML format in file: {e}")

        return data.unwrap()

    @classmethod
    def load_config_from_file(cls, path: Path, overrides: Optional[Dict[str, Any]] = None) -> 'ProvisioningConfig':
        """Loads and validates a TOML file against the schema."""
        data = cls.read_config_file(path)
        data.update(overrides or {})
        return cls(**data)

    def display_summary(self) -> str:
        """Generates the pre-flight summary shown before anything is touched."""
        s = typer.style("\nPROVISIONING SUMMARY", fg=typer.colors.BLUE, bold=True) + "\n"
        s += "----------------------------------------\n"
        s += f"  Target device:      {typer.style(self.device, fg=typer.colors.CYAN)} ({typer.style('WIPING', fg=typer.colors.RED)})\n"
        s += f"  Hostname:           {self.hostname}\n"
        s += f"  User:               {self.username} (wheel, Pwd={self._masked(self.password)})\n"
        s += f"  Timezone / Locale:  {self.timezone} / {self.locale}\n"

        s += typer.style("\nENCRYPTION & VOLUMES", fg=typer.colors.BLUE, bold=True) + "\n"
        s += "----------------------------------------\n"
        s += f"  LUKS mapper:        /dev/mapper/{self.mapper_name} " \
             f"{typer.style('(passphrase set)', fg=typer.colors.YELLOW)}\n"
        s += f"  Volume group:       {self.volume_group}\n"
        s += f"    - swap  {self.swap_size}\n"
        s += f"    - root  {self.root_size}\n"
        s += "    - home  remaining free space\n"
        return s

    @staticmethod
    def _masked(secret: SecretStr) -> str:
        return "set" if secret.get_secret_value() else "N/A"
