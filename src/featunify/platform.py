"""Evaluate Cargo platform filters against one target."""

from __future__ import annotations

import functools
import re
from collections.abc import Iterable
from dataclasses import dataclass

from featunify.errors import PlatformError

_TOKEN_RE = re.compile(r'\s*(?:([A-Za-z_][A-Za-z0-9_]*)|"([^"]*)"|([(),=]))')

_ARCH_ALIASES = {
    "i386": "x86",
    "i586": "x86",
    "i686": "x86",
    "armv7": "arm",
    "armv7a": "arm",
    "thumbv7em": "arm",
    "riscv64gc": "riscv64",
    "riscv32imac": "riscv32",
    "arm64": "aarch64",
}
_64BIT_ARCHES = {
    "x86_64",
    "aarch64",
    "riscv64",
    "powerpc64",
    "powerpc64le",
    "mips64",
    "s390x",
    "sparc64",
    "wasm64",
    "loongarch64",
}
_BIG_ENDIAN_ARCHES = {"powerpc", "powerpc64", "mips", "mips64", "s390x", "sparc64"}
_UNIX_OSES = {
    "linux",
    "macos",
    "ios",
    "android",
    "freebsd",
    "netbsd",
    "openbsd",
    "dragonfly",
    "solaris",
    "illumos",
}


@dataclass(frozen=True)
class Platform:
    """A target triple together with the cfg values it sets.

    Flags such as ``unix`` are stored as ``("unix", None)``; key/value pairs as
    ``("target_os", "linux")``.
    """

    triple: str
    cfgs: frozenset[tuple[str, str | None]] = frozenset()

    @classmethod
    def from_cfg_lines(cls, triple: str, lines: Iterable[str]) -> Platform:
        """Build from ``rustc --print=cfg`` output."""
        cfgs: set[tuple[str, str | None]] = set()
        for raw in lines:
            line = raw.strip()
            if not line:
                continue
            name, sep, value = line.partition("=")
            if sep:
                cfgs.add((name.strip(), value.strip().strip('"')))
            else:
                cfgs.add((name, None))
        return cls(triple, frozenset(cfgs))

    @classmethod
    def from_triple(cls, triple: str) -> Platform:
        """Derive the common cfg values from the triple alone.

        Used when rustc cannot be asked; covers ``target_arch``, ``target_os``,
        ``target_family``, ``target_env``, ``target_vendor``,
        ``target_pointer_width`` and ``target_endian``.
        """
        parts = triple.split("-")
        arch = parts[0]
        arch = _ARCH_ALIASES.get(arch, arch)
        if arch.startswith("arm") and arch != "arm64":
            arch = "arm"

        vendor = "unknown"
        os_name = "none"
        env = ""
        if "windows" in parts:
            os_name = "windows"
            env = parts[-1] if parts[-1] != "windows" else ""
            vendor = parts[1] if len(parts) > 2 else "pc"
        elif "darwin" in parts:
            os_name, vendor = "macos", "apple"
        elif "ios" in parts:
            os_name, vendor = "ios", "apple"
        elif "android" in parts or "androideabi" in parts:
            os_name = "android"
        elif "linux" in parts:
            os_name = "linux"
            vendor = parts[1] if len(parts) > 3 else "unknown"
            tail = parts[parts.index("linux") + 1 :]
            env = tail[0] if tail else ""
            if env.startswith("gnu"):
                env = "gnu"
            elif env.startswith("musl"):
                env = "musl"
        elif len(parts) >= 3:
            vendor = parts[1]
            os_name = parts[2]

        cfgs: set[tuple[str, str | None]] = {
            ("target_arch", arch),
            ("target_os", os_name),
            ("target_vendor", vendor),
            ("target_env", env),
            ("target_pointer_width", "64" if arch in _64BIT_ARCHES else "32"),
            ("target_endian", "big" if arch in _BIG_ENDIAN_ARCHES else "little"),
        }
        if os_name == "windows":
            cfgs |= {("windows", None), ("target_family", "windows")}
        elif os_name in _UNIX_OSES:
            cfgs |= {("unix", None), ("target_family", "unix")}
        elif arch.startswith("wasm"):
            cfgs.add(("target_family", "wasm"))
        return cls(triple, frozenset(cfgs))

    def matches(self, expression: str | None) -> bool:
        """Return True if *expression* (a triple or ``cfg(...)``) selects this target."""
        if expression is None:
            return True
        expression = expression.strip()
        if not expression.startswith("cfg("):
            return expression == self.triple
        return _evaluate(_parse(expression), self.cfgs)


# ---------------------------------------------------------------------------
# cfg expression parser
# ---------------------------------------------------------------------------
#
# Parsed predicates are nested tuples:
#   ("flag", name) | ("pair", name, value) | ("all", [...]) | ("any", [...]) | ("not", pred)


def _tokenize(expression: str) -> list[str]:
    tokens: list[str] = []
    pos = 0
    while pos < len(expression):
        if expression[pos:].strip() == "":
            break
        m = _TOKEN_RE.match(expression, pos)
        if m is None:
            raise PlatformError(expression, f"unexpected character at {pos}")
        ident, string, punct = m.groups()
        if ident is not None:
            tokens.append(ident)
        elif string is not None:
            tokens.append('"' + string)
        else:
            tokens.append(punct)
        pos = m.end()
    return tokens


@functools.lru_cache(maxsize=None)
def _parse(expression: str) -> tuple:
    tokens = _tokenize(expression)
    if tokens[:2] != ["cfg", "("] or tokens[-1:] != [")"]:
        raise PlatformError(expression, "expected cfg(...)")
    try:
        pred, pos = _parse_predicate(expression, tokens, 2)
    except IndexError:
        raise PlatformError(expression, "unbalanced parentheses") from None
    if pos != len(tokens) - 1:
        raise PlatformError(expression, "trailing tokens")
    return pred


def _parse_predicate(expression: str, tokens: list[str], pos: int) -> tuple[tuple, int]:
    if pos >= len(tokens):
        raise PlatformError(expression, "unexpected end of expression")
    name = tokens[pos]
    if not re.match(r"[A-Za-z_]", name):
        raise PlatformError(expression, f"unexpected token {name!r}")
    pos += 1

    if name in ("all", "any", "not") and pos < len(tokens) and tokens[pos] == "(":
        pos += 1
        args: list[tuple] = []
        while tokens[pos] != ")":
            arg, pos = _parse_predicate(expression, tokens, pos)
            args.append(arg)
            if tokens[pos] == ",":
                pos += 1
            elif tokens[pos] != ")":
                raise PlatformError(expression, f"expected ',' or ')', got {tokens[pos]!r}")
        pos += 1
        if name == "not":
            if len(args) != 1:
                raise PlatformError(expression, "not() takes exactly one predicate")
            return ("not", args[0]), pos
        return (name, args), pos

    if pos < len(tokens) and tokens[pos] == "=":
        value = tokens[pos + 1] if pos + 1 < len(tokens) else ""
        if not value.startswith('"'):
            raise PlatformError(expression, f"expected a string after {name} =")
        return ("pair", name, value[1:]), pos + 2
    return ("flag", name), pos


def _evaluate(pred: tuple, cfgs: frozenset[tuple[str, str | None]]) -> bool:
    op = pred[0]
    if op == "flag":
        return (pred[1], None) in cfgs
    if op == "pair":
        return (pred[1], pred[2]) in cfgs
    if op == "not":
        return not _evaluate(pred[1], cfgs)
    if op == "all":
        return all(_evaluate(p, cfgs) for p in pred[1])
    return any(_evaluate(p, cfgs) for p in pred[1])
