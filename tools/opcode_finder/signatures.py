"""
Signature configuration model and loader.

The configuration document is a JSON object naming the target
executable and an ordered list of signatures. A signature with
``SubInfo`` roots a jump table; its children are resolved against the
reconstructed table.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional


class ConfigError(ValueError):
    """Raised when the configuration document is malformed."""


class ReadType(Enum):
    NONE = "None"
    UINT8 = "Uint8"
    UINT16 = "Uint16"
    UINT32 = "Uint32"
    UINT64 = "Uint64"


class ActionType(Enum):
    NONE = "None"                                        # Match near the table entry
    READ_THEN_CROSS_REFERENCE = "ReadThenCrossReference"  # Read, then follow callers
    CROSS_REFERENCE = "CrossReference"                    # Follow callers only


class JumpTableType(Enum):
    NONE = "None"
    DIRECT = "Direct"
    INDIRECT = "Indirect"


@dataclass
class SignatureInfo:
    """A configured probe."""
    signature: str
    name: str
    offset: int = 0
    function_size: int = 0
    read_type: ReadType = ReadType.NONE
    action_type: ActionType = ActionType.NONE
    reference_count: Optional[int] = None
    jump_table_type: JumpTableType = JumpTableType.NONE
    has_multiple_result: bool = False
    desired_values: Dict[int, str] = field(default_factory=dict)
    sub_info: Optional[List["SignatureInfo"]] = None

    @property
    def is_table_root(self) -> bool:
        return self.sub_info is not None

    def iter_names(self):
        """Yield the names this signature reports under."""
        if self.sub_info is None:
            yield self.name
            return
        for child in self.sub_info:
            yield child.name


@dataclass
class FinderConfig:
    """Parsed configuration document."""
    game_path: str
    signatures: List[SignatureInfo] = field(default_factory=list)


def _parse_enum(enum_cls, value, key: str):
    if value is None:
        return list(enum_cls)[0]
    if isinstance(value, bool):
        raise ConfigError(f"{key}: expected a name or ordinal, got {value!r}")
    if isinstance(value, int):
        members = list(enum_cls)
        if 0 <= value < len(members):
            return members[value]
        raise ConfigError(f"{key}: ordinal {value} out of range")
    for member in enum_cls:
        if member.value.lower() == str(value).lower():
            return member
    raise ConfigError(f"{key}: unknown value {value!r}")


def _parse_int(value, key: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{key}: expected an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError:
            pass
    raise ConfigError(f"{key}: expected an integer, got {value!r}")


def parse_signature(data: dict, path: str = "Signatures") -> SignatureInfo:
    """Build a SignatureInfo from one JSON signature object."""
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected an object")

    try:
        signature = data["Signature"]
        name = data["Name"]
    except KeyError as e:
        raise ConfigError(f"{path}: missing key {e.args[0]}") from None
    if not isinstance(signature, str) or not isinstance(name, str):
        raise ConfigError(f"{path}: Signature and Name must be strings")

    path = f"{path}[{name}]"

    reference_count = data.get("ReferenceCount")
    if reference_count is not None:
        reference_count = _parse_int(reference_count, f"{path}.ReferenceCount")

    desired_values = {}
    for key, value in (data.get("DesiredValues") or {}).items():
        desired_values[_parse_int(key, f"{path}.DesiredValues")] = str(value)

    sub_info = data.get("SubInfo")
    if sub_info is not None:
        if not isinstance(sub_info, list):
            raise ConfigError(f"{path}.SubInfo: expected a list")
        sub_info = [parse_signature(child, f"{path}.SubInfo")
                    for child in sub_info]

    return SignatureInfo(
        signature=signature,
        name=name,
        offset=_parse_int(data.get("Offset", 0), f"{path}.Offset"),
        function_size=_parse_int(data.get("FunctionSize", 0),
                                 f"{path}.FunctionSize"),
        read_type=_parse_enum(ReadType, data.get("ReadType"),
                              f"{path}.ReadType"),
        action_type=_parse_enum(ActionType, data.get("ActionType"),
                                f"{path}.ActionType"),
        reference_count=reference_count,
        jump_table_type=_parse_enum(JumpTableType, data.get("JumpTableType"),
                                    f"{path}.JumpTableType"),
        has_multiple_result=bool(data.get("HasMultipleResult", False)),
        desired_values=desired_values,
        sub_info=sub_info,
    )


def parse_config(data: dict) -> FinderConfig:
    """Build a FinderConfig from the decoded JSON document."""
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be an object")

    game_path = data.get("GamePath")
    if not isinstance(game_path, str) or not game_path:
        raise ConfigError("GamePath is missing")

    signatures = data.get("Signatures") or []
    if not isinstance(signatures, list):
        raise ConfigError("Signatures must be a list")

    return FinderConfig(
        game_path=game_path,
        signatures=[parse_signature(s) for s in signatures],
    )


def load_config(config_path: str) -> FinderConfig:
    """
    Load the signature configuration document.

    Args:
        config_path: Path to config.json.

    Returns:
        The parsed configuration.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Cannot find file {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"{config_path}: {e}") from None

    return parse_config(data)
