# services/docflow-service/docflow/core/instructions.py
"""
Field instructions carried by write-intents:

    "++" / "--"        increment / decrement by one
    "+N" / "-N"        increment / decrement by N
    "arr+(a,b)"        add a and b to an array field
    "arr-(a,b)"        remove a and b from an array field
    "arr(+a,-b)"       mixed; unsigned values are added
    "del"              remove the field
    "globalCounter(name[,max])"
                       next value of a named counter that restarts daily
                       or after reaching max
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple, Union

from docflow.core.errors import InvalidInstructionError

logger = logging.getLogger("docflow.instructions")

_ARR_RE = re.compile(r"^arr([+-]?)\((.*)\)$")
_COUNTER_RE = re.compile(r"^globalCounter\(\s*([^,\s()]+)\s*(?:,\s*(\d+)\s*)?\)$")

Number = Union[int, float]


@dataclass
class FieldTransforms:
    increments: Dict[str, Number] = field(default_factory=dict)
    array_union: Dict[str, List[str]] = field(default_factory=dict)
    array_remove: Dict[str, List[str]] = field(default_factory=dict)
    unset: List[str] = field(default_factory=list)
    counters: Dict[str, Tuple[str, Optional[int]]] = field(default_factory=dict)

    def fields(self) -> List[str]:
        return sorted(
            set(self.increments) | set(self.array_union) | set(self.array_remove) | set(self.unset) | set(self.counters)
        )


def _number(text: str) -> Optional[Number]:
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return None


def parse_array_params(field_name: str, opcode: str) -> Tuple[List[str], List[str]]:
    m = _ARR_RE.match(opcode)
    if not m:
        raise InvalidInstructionError(field_name, opcode)
    default_sign, params_str = m.groups()
    params = [p.strip() for p in params_str.split(",") if p.strip()]
    if not params:
        raise InvalidInstructionError(field_name, opcode)

    to_add: List[str] = []
    to_remove: List[str] = []
    for param in params:
        sign = default_sign or "+"
        if param[0] in "+-":
            sign, param = param[0], param[1:]
        (to_remove if sign == "-" else to_add).append(param)
    return to_add, to_remove


def parse_increment(field_name: str, opcode: str) -> Number:
    if opcode == "++":
        return 1
    if opcode == "--":
        return -1
    if opcode[:1] in ("+", "-"):
        n = _number(opcode[1:])
        if n is not None:
            return n if opcode[0] == "+" else -n
    raise InvalidInstructionError(field_name, opcode)


def parse_global_counter(field_name: str, opcode: str) -> Tuple[str, Optional[int]]:
    m = _COUNTER_RE.match(opcode)
    if not m:
        raise InvalidInstructionError(field_name, opcode)
    name, max_value = m.groups()
    return name, int(max_value) if max_value else None


def convert_instructions(instructions: Optional[Mapping[str, str]]) -> FieldTransforms:
    """
    Translate opcodes into atomic field transforms. Invalid opcodes are
    logged and skipped so one bad field does not block the rest of the write.
    """
    out = FieldTransforms()
    for field_name, opcode in (instructions or {}).items():
        try:
            if opcode == "del":
                out.unset.append(field_name)
            elif opcode.startswith("globalCounter"):
                out.counters[field_name] = parse_global_counter(field_name, opcode)
            elif opcode.startswith("arr"):
                to_add, to_remove = parse_array_params(field_name, opcode)
                if to_add:
                    out.array_union[field_name] = to_add
                if to_remove:
                    out.array_remove[field_name] = to_remove
            else:
                out.increments[field_name] = parse_increment(field_name, opcode)
        except InvalidInstructionError as e:
            logger.warning("%s; skipped", e)
    return out


# ---------- netting ---------- #

def _array_signs(field_name: str, opcode: str) -> Dict[str, int]:
    to_add, to_remove = parse_array_params(field_name, opcode)
    signs = {value: 1 for value in to_add}
    signs.update({value: -1 for value in to_remove})
    return signs


def _net_increments(field_name: str, current: str, opcode: str) -> Optional[str]:
    total = parse_increment(field_name, current) + parse_increment(field_name, opcode)
    if total == 0:
        return None
    return f"+{total}" if total > 0 else str(total)


def _net_arrays(field_name: str, current: str, opcode: str) -> Optional[str]:
    signs = _array_signs(field_name, current)
    for value, sign in _array_signs(field_name, opcode).items():
        net = signs.get(value, 0) + sign
        if net == 0:
            signs.pop(value, None)
        else:
            signs[value] = 1 if net > 0 else -1
    if not signs:
        return None
    return "arr(" + ",".join(("+" if s > 0 else "-") + v for v, s in signs.items()) + ")"


def merge_instructions(
    existing: Optional[Mapping[str, str]],
    incoming: Optional[Mapping[str, str]],
    dst_path: str = "",
) -> Optional[Dict[str, str]]:
    """
    Net two instruction sets for the same document into one:

        {"n": "+2"} + {"n": "--"}            -> {"n": "+1"}
        {"n": "++"} + {"n": "--"}            -> {}
        {"t": "arr(+a)"} + {"t": "arr(-a,+b)"} -> {"t": "arr(+b)"}

    An existing "del" is kept, an incoming "del" replaces the existing
    opcode, and any other pair keeps the existing opcode with a warning.
    Neither input is modified.
    """
    if existing is None and incoming is None:
        return None
    out: Dict[str, str] = dict(existing or {})
    for field_name, opcode in (incoming or {}).items():
        current = out.get(field_name)
        if current is None:
            out[field_name] = opcode
            continue
        try:
            if current[:1] in ("+", "-") and opcode[:1] in ("+", "-"):
                netted = _net_increments(field_name, current, opcode)
            elif current.startswith("arr") and opcode.startswith("arr"):
                netted = _net_arrays(field_name, current, opcode)
            elif current == "del":
                logger.warning('Field "%s" in %s is set to be deleted; %r skipped', field_name, dst_path, opcode)
                continue
            elif opcode == "del":
                out[field_name] = "del"
                continue
            else:
                logger.warning('Conflicting instructions %r and %r for field "%s" in %s; keeping %r',
                               current, opcode, field_name, dst_path, current)
                continue
        except InvalidInstructionError as e:
            logger.warning("%s; keeping %r", e, current)
            continue
        if netted is None:
            del out[field_name]
        else:
            out[field_name] = netted
    return out
