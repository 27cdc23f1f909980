"""Contract interface loading and validation.

A ContractInterface is the ABI plus (for deployment) the creation
bytecode of the MessageStorage contract. It is loaded once at startup,
checked for the entries the pipeline relies on, and never changes
afterwards. Every method selector and the event topic are derived here so
that encoding and decoding later on are plain table lookups.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from eth_abi import encode
from eth_abi.exceptions import EncodingError
from eth_utils import (
    event_signature_to_log_topic,
    function_signature_to_4byte_selector,
)

from message_storage.constants import (
    MESSAGE_EVENT,
    READ_ALL_METHOD,
    READ_ONE_METHOD,
    WRITE_METHOD,
)
from message_storage.errors import BuildError, ContractInterfaceError

# ABI file directory
ABI_DIR = Path(__file__).resolve().parent.parent / "abis"
BUNDLED_ABI = "message_storage.json"

# name -> (input types, output types) the pipeline depends on
REQUIRED_FUNCTIONS: Dict[str, Tuple[Tuple[str, ...], Tuple[str, ...]]] = {
    WRITE_METHOD: (("string",), ()),
    READ_ALL_METHOD: ((), ("string[]",)),
    READ_ONE_METHOD: (("uint256",), ("string",)),
}
REQUIRED_EVENT = (MESSAGE_EVENT, (("string", False), ("address", True)))


def _canonical_type(param: Mapping[str, Any]) -> str:
    """Return the canonical ABI type, expanding tuple components."""
    abi_type = param["type"]
    if abi_type.startswith("tuple"):
        inner = ",".join(_canonical_type(c) for c in param.get("components", []))
        return f"({inner}){abi_type[len('tuple'):]}"
    return abi_type


@dataclass(frozen=True)
class AbiFunction:
    name: str
    input_types: Tuple[str, ...]
    output_types: Tuple[str, ...]
    selector: bytes
    state_mutability: str

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.input_types)})"

    @property
    def is_read_only(self) -> bool:
        return self.state_mutability in ("view", "pure")


@dataclass(frozen=True)
class AbiEvent:
    name: str
    types: Tuple[str, ...]
    indexed: Tuple[bool, ...]
    topic: bytes
    anonymous: bool = False

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.types)})"


class ContractInterface:
    """
    Immutable ABI + bytecode for the MessageStorage contract.

    Example:
        >>> iface = ContractInterface.from_artifact("contracts/artifacts/MessageStorage.json")
        >>> iface.function("writeMessage").signature
        'writeMessage(string)'
    """

    def __init__(
        self,
        abi: Sequence[Mapping[str, Any]],
        bytecode: Union[bytes, str, None] = None,
        *,
        name: str = "MessageStorage",
    ) -> None:
        if not isinstance(abi, (list, tuple)):
            raise ContractInterfaceError("ABI must be a list of entries")
        self._abi: Tuple[Dict[str, Any], ...] = tuple(copy.deepcopy(dict(e)) for e in abi)
        self._bytecode = _to_bytecode(bytecode)
        self._name = name
        self._functions: Dict[str, AbiFunction] = {}
        self._events: Dict[str, AbiEvent] = {}
        self._constructor_types: Tuple[str, ...] = ()
        self._index()
        self._validate()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    @classmethod
    def from_artifact(cls, path: Union[str, Path]) -> "ContractInterface":
        """Load a compiled artifact (solc combined, foundry or hardhat shape).

        Args:
            path: Path to the artifact JSON file

        Returns:
            Validated ContractInterface

        Raises:
            ContractInterfaceError: If the file is missing, unparsable or incomplete
        """
        artifact_path = Path(path)
        try:
            raw = json.loads(artifact_path.read_text())
        except FileNotFoundError:
            raise ContractInterfaceError(
                f"Artifact not found: {artifact_path}", details={"path": str(artifact_path)}
            ) from None
        except (OSError, json.JSONDecodeError) as e:
            raise ContractInterfaceError(
                f"Failed to parse artifact {artifact_path}: {e}",
                details={"path": str(artifact_path)},
            ) from e
        name = artifact_path.stem
        if isinstance(raw, dict):
            name = raw.get("contractName", name)
        return cls.from_dict(raw, name=name)

    @classmethod
    def from_dict(cls, artifact: Any, *, name: str = "MessageStorage") -> "ContractInterface":
        if isinstance(artifact, list):
            return cls(artifact, None, name=name)
        if not isinstance(artifact, dict) or "abi" not in artifact:
            raise ContractInterfaceError("ABI not found in artifact")
        bytecode = artifact.get("bytecode")
        if isinstance(bytecode, dict):
            bytecode = bytecode.get("object")
        return cls(artifact["abi"], bytecode, name=name)

    @classmethod
    def bundled(cls) -> "ContractInterface":
        """Interface from the packaged ABI. Has no bytecode, so it cannot deploy."""
        return cls.from_dict(json.loads((ABI_DIR / BUNDLED_ABI).read_text()))

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def name(self) -> str:
        return self._name

    @property
    def abi(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(list(self._abi))

    @property
    def bytecode(self) -> bytes:
        return self._bytecode

    @property
    def has_bytecode(self) -> bool:
        return bool(self._bytecode)

    @property
    def constructor_types(self) -> Tuple[str, ...]:
        return self._constructor_types

    @property
    def message_event(self) -> AbiEvent:
        return self._events[MESSAGE_EVENT]

    def function(self, name_or_signature: str) -> AbiFunction:
        try:
            return self._functions[name_or_signature]
        except KeyError:
            raise ContractInterfaceError(
                f"{self._name} has no function {name_or_signature!r}"
            ) from None

    def event(self, name_or_signature: str) -> AbiEvent:
        try:
            return self._events[name_or_signature]
        except KeyError:
            raise ContractInterfaceError(f"{self._name} has no event {name_or_signature!r}") from None

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------
    def encode_call(self, name_or_signature: str, args: Sequence[Any]) -> bytes:
        """ABI-encode selector + arguments for a function call.

        Raises:
            BuildError: If the arguments do not match the function inputs
        """
        fn = self.function(name_or_signature)
        if len(args) != len(fn.input_types):
            raise BuildError(
                f"{fn.signature} takes {len(fn.input_types)} argument(s), got {len(args)}"
            )
        try:
            return fn.selector + encode(list(fn.input_types), list(args))
        except (EncodingError, TypeError, ValueError, OverflowError) as e:
            raise BuildError(f"Cannot encode arguments for {fn.signature}: {e}") from e

    def encode_deployment(self, constructor_args: Sequence[Any]) -> bytes:
        """Creation bytecode followed by the ABI-encoded constructor arguments."""
        if not self.has_bytecode:
            raise BuildError(f"{self._name} interface has no bytecode; cannot deploy")
        if len(constructor_args) != len(self._constructor_types):
            raise BuildError(
                f"constructor takes {len(self._constructor_types)} argument(s), "
                f"got {len(constructor_args)}"
            )
        if not self._constructor_types:
            return self._bytecode
        try:
            return self._bytecode + encode(list(self._constructor_types), list(constructor_args))
        except (EncodingError, TypeError, ValueError, OverflowError) as e:
            raise BuildError(f"Cannot encode constructor arguments: {e}") from e

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _index(self) -> None:
        for entry in self._abi:
            kind = entry.get("type", "function")
            if kind == "function":
                inputs = tuple(_canonical_type(p) for p in entry.get("inputs", []))
                outputs = tuple(_canonical_type(p) for p in entry.get("outputs", []))
                signature = f"{entry['name']}({','.join(inputs)})"
                fn = AbiFunction(
                    name=entry["name"],
                    input_types=inputs,
                    output_types=outputs,
                    selector=function_signature_to_4byte_selector(signature),
                    state_mutability=entry.get("stateMutability", "nonpayable"),
                )
                self._functions[signature] = fn
                # bare name resolves to the first declaration
                self._functions.setdefault(fn.name, fn)
            elif kind == "event":
                params = entry.get("inputs", [])
                types = tuple(_canonical_type(p) for p in params)
                signature = f"{entry['name']}({','.join(types)})"
                ev = AbiEvent(
                    name=entry["name"],
                    types=types,
                    indexed=tuple(bool(p.get("indexed")) for p in params),
                    topic=event_signature_to_log_topic(signature),
                    anonymous=bool(entry.get("anonymous", False)),
                )
                self._events[signature] = ev
                self._events.setdefault(ev.name, ev)
            elif kind == "constructor":
                self._constructor_types = tuple(
                    _canonical_type(p) for p in entry.get("inputs", [])
                )

    def _validate(self) -> None:
        missing = []
        for fn_name, (inputs, outputs) in REQUIRED_FUNCTIONS.items():
            fn = self._functions.get(f"{fn_name}({','.join(inputs)})")
            if fn is None or fn.output_types != outputs:
                missing.append(f"{fn_name}({','.join(inputs)}) -> ({','.join(outputs)})")
        ev_name, ev_params = REQUIRED_EVENT
        ev = self._events.get(ev_name)
        if ev is None or tuple(zip(ev.types, ev.indexed)) != ev_params:
            missing.append("event MessageWritten(string message, address indexed sender)")
        if missing:
            raise ContractInterfaceError(
                f"{self._name} ABI is missing required entries: {', '.join(missing)}",
                details={"missing": missing},
            )

    def __repr__(self) -> str:
        return (
            f"ContractInterface(name={self._name!r}, functions={len(set(self._functions.values()))}, "
            f"bytecode={len(self._bytecode)} bytes)"
        )


def _to_bytecode(value: Union[bytes, str, None]) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        hex_str = value[2:] if value.startswith("0x") else value
        try:
            return bytes.fromhex(hex_str)
        except ValueError:
            raise ContractInterfaceError(
                "Bytecode is not valid hex (unlinked library placeholders?)"
            ) from None
    raise ContractInterfaceError("Bytecode must be hex string or bytes")


def load_interface(artifact_path: Optional[Union[str, Path]] = None) -> ContractInterface:
    """Load from ``artifact_path`` when given, otherwise the bundled ABI."""
    if artifact_path is None:
        return ContractInterface.bundled()
    return ContractInterface.from_artifact(artifact_path)
