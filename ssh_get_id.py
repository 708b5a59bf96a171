#!/usr/bin/env python3
"""
ssh_get_id.py

Fetch the public SSH keys published by users of code-hosting providers and
merge them into an authorized_keys file without duplicating keys.

Usage examples:
  ssh-get-id gh:torvalds
  ssh-get-id -o - -l NONE gh:alice gl:bob lp:carol
  ssh-get-id -w -o ~/.ssh/authorized_keys github:alice

Keys already present in the local file keep their position and comment;
new keys are appended with a "#ssh-get-id <source>:<id>" comment.

This script avoids external dependencies and uses urllib from the stdlib.
"""
from __future__ import annotations

import argparse
import base64
import binascii
import hashlib
import http.client
import logging
import os
import re
import struct
import sys
import tempfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

__version__ = "1.0.0"

logger = logging.getLogger(__name__)

USER_AGENT = f"ssh-get-id/{__version__}"
DEFAULT_TIMEOUT = 10.0
PROVENANCE_TAG = "#ssh-get-id"
SKIP_LOCAL = "NONE"
STDIO = "-"

# OpenSSH separates fields with spaces and tabs only.
BLANKS = " \t"
FIELD_SEP = re.compile(r"[ \t]+")

# Anything shorter cannot hold even a key type token.
MIN_PAYLOAD = len("ssh-rsa")

CERT_SUFFIX = "-cert-v01@openssh.com"

# Number of wire fields following the type string in a plain public key blob.
KEY_FIELDS = {
    "ssh-rsa": 2,
    "ssh-dss": 4,
    "ssh-ed25519": 1,
    "ssh-ed448": 1,
    "ecdsa-sha2-nistp256": 2,
    "ecdsa-sha2-nistp384": 2,
    "ecdsa-sha2-nistp521": 2,
    "sk-ecdsa-sha2-nistp256@openssh.com": 3,
    "sk-ssh-ed25519@openssh.com": 2,
}

FIXED_KEY_SIZES = {
    "ssh-ed25519": 32,
    "ssh-ed448": 57,
    "sk-ssh-ed25519@openssh.com": 32,
}


def _cert_type(key_type: str) -> str:
    if key_type.endswith("@openssh.com"):
        return key_type[: -len("@openssh.com")] + CERT_SUFFIX
    return key_type + CERT_SUFFIX


CERT_TYPES = {_cert_type(name): name for name in KEY_FIELDS}
KEY_TYPES = frozenset(KEY_FIELDS) | frozenset(CERT_TYPES)


class KeyParseError(ValueError):
    """Raised when input is not valid authorized_keys text."""

    def __init__(self, message: str, source: Optional[str] = None, lineno: Optional[int] = None):
        self.source = source
        self.lineno = lineno
        where = []
        if source:
            where.append(source)
        if lineno is not None:
            where.append(f"line {lineno}")
        super().__init__(": ".join(where + [message]))


class SourceUnavailable(RuntimeError):
    """Raised when a provider cannot return keys for an identity."""


@dataclass(frozen=True)
class KeyEntry:
    """One authorized_keys line: key material, comment and options."""

    key_type: str
    blob: bytes
    comment: str = ""
    options: Tuple[str, ...] = ()

    @property
    def encoded(self) -> str:
        return base64.b64encode(self.blob).decode("ascii")

    @property
    def identity(self) -> str:
        """Canonical identity used for deduplication: type and key material only."""
        return f"{self.key_type} {self.encoded}"

    @property
    def fingerprint(self) -> str:
        digest = base64.b64encode(hashlib.sha256(self.blob).digest()).decode("ascii")
        return "SHA256:" + digest.rstrip("=")

    def with_comment(self, comment: str) -> "KeyEntry":
        return replace(self, comment=comment)

    def to_line(self) -> str:
        line = self.identity
        if self.options:
            line = ",".join(self.options) + " " + line
        if self.comment:
            line += " " + self.comment
        return line

    def __str__(self) -> str:
        return self.to_line()


def _read_wire_string(blob: bytes, offset: int) -> Tuple[bytes, int]:
    if offset + 4 > len(blob):
        raise ValueError("truncated key data")
    (length,) = struct.unpack(">I", blob[offset:offset + 4])
    start = offset + 4
    end = start + length
    if end > len(blob):
        raise ValueError("truncated key data")
    return blob[start:end], end


def _check_blob(key_type: str, blob: bytes) -> None:
    embedded, offset = _read_wire_string(blob, 0)
    if embedded != key_type.encode("ascii"):
        raise ValueError(
            f"key type {key_type!r} does not match encoded type "
            f"{embedded.decode('ascii', errors='replace')!r}"
        )
    if key_type in CERT_TYPES:
        # Certificates mix fixed-width integers into the blob; only the nonce
        # is framed like the plain key fields.
        _read_wire_string(blob, offset)
        return

    fields: List[bytes] = []
    while offset < len(blob):
        field, offset = _read_wire_string(blob, offset)
        fields.append(field)
    if len(fields) != KEY_FIELDS[key_type]:
        raise ValueError(f"wrong number of fields for {key_type}")

    size = FIXED_KEY_SIZES.get(key_type)
    if size is not None and len(fields[0]) != size:
        raise ValueError(f"bad key length for {key_type}")
    if "nistp" in key_type:
        curve = key_type[key_type.index("nistp"):][:len("nistp256")]
        if fields[0] != curve.encode("ascii"):
            raise ValueError(f"curve does not match {key_type}")


def _split_options(line: str) -> Tuple[Tuple[str, ...], str]:
    """Split leading options off a line; return (options, rest of line)."""
    options: List[str] = []
    current: List[str] = []
    in_quote = False
    escaped = False
    for index, char in enumerate(line):
        if escaped:
            escaped = False
        elif char == "\\" and in_quote:
            escaped = True
        elif char == '"':
            in_quote = not in_quote
        elif not in_quote and char in " \t":
            options.append("".join(current))
            if not all(options):
                raise ValueError("empty option")
            return tuple(options), line[index:].strip(BLANKS)
        elif not in_quote and char == ",":
            options.append("".join(current))
            current = []
            continue
        current.append(char)
    if in_quote:
        raise ValueError("unterminated quote in options")
    raise ValueError("missing key data")


def _parse_key(text: str, options: Tuple[str, ...]) -> KeyEntry:
    parts = FIELD_SEP.split(text, maxsplit=2)
    if len(parts) < 2:
        raise ValueError(f"missing key data after {parts[0]!r}")
    key_type, encoded = parts[0], parts[1]
    comment = parts[2].strip(BLANKS) if len(parts) > 2 else ""
    try:
        blob = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        raise ValueError("malformed base64 key data") from None
    _check_blob(key_type, blob)
    return KeyEntry(key_type=key_type, blob=blob, comment=comment, options=options)


def parse_line(line: str) -> KeyEntry:
    """Parse a single `[options] type base64 [comment]` line."""
    line = line.strip(BLANKS)
    head = FIELD_SEP.split(line, maxsplit=1)[0]
    if head in KEY_TYPES:
        return _parse_key(line, ())
    if head.startswith("ssh-") or head.startswith("ecdsa-") or head.startswith("sk-"):
        raise ValueError(f"unknown key type {head!r}")
    options, rest = _split_options(line)
    key_type = FIELD_SEP.split(rest, maxsplit=1)[0]
    if key_type not in KEY_TYPES:
        raise ValueError(f"unknown key type {key_type!r}")
    return _parse_key(rest, options)


def iter_keys(data: Union[bytes, str], source: Optional[str] = None) -> Iterator[KeyEntry]:
    """Yield an entry for every key line in `data`, duplicates included.

    Blank lines and `#` comment lines are skipped. The first malformed line
    raises KeyParseError.
    """
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="surrogateescape")
    for lineno, line in enumerate(data.split("\n"), start=1):
        line = line.rstrip("\r").strip(BLANKS)
        if not line or line.startswith("#"):
            continue
        try:
            yield parse_line(line)
        except ValueError as e:
            raise KeyParseError(str(e), source=source, lineno=lineno) from None


class KeyTable:
    """Insertion-ordered set of key entries, unique by canonical identity."""

    def __init__(self, entries: Iterable[KeyEntry] = ()):
        self._entries: List[KeyEntry] = []
        self._index: Dict[str, KeyEntry] = {}
        for entry in entries:
            self.add(entry)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[KeyEntry]:
        return iter(self._entries)

    def __contains__(self, item: object) -> bool:
        if isinstance(item, KeyEntry):
            item = item.identity
        return item in self._index

    def __repr__(self) -> str:
        return f"KeyTable({len(self)} keys)"

    @property
    def entries(self) -> List[KeyEntry]:
        return list(self._entries)

    def get(self, identity: str) -> Optional[KeyEntry]:
        return self._index.get(identity)

    def add(self, entry: KeyEntry) -> bool:
        """Append `entry` unless its key is already present. First seen wins."""
        if entry.identity in self._index:
            logger.debug("Dropping duplicate key %s", entry.fingerprint)
            return False
        self._index[entry.identity] = entry
        self._entries.append(entry)
        return True

    def parse(self, data: Union[bytes, str], source: Optional[str] = None) -> int:
        """Parse authorized_keys text and add its keys; return how many were new.

        Nothing from `data` is added if any line fails to parse. Keys added
        by earlier calls are kept.
        """
        staged = KeyTable(iter_keys(data, source=source))
        added = 0
        for entry in staged:
            if self.add(entry):
                added += 1
        logger.debug("Parsed %d new keys from %s", added, source or "input")
        return added

    def merge(self, other: "KeyTable", warn: bool = False) -> List[KeyEntry]:
        """Append the keys of `other` that are not present yet.

        Returns the entries of this table that made a key from `other` a
        duplicate. With `warn`, each one is also logged.
        """
        duplicates: List[KeyEntry] = []
        for entry in list(other):
            existing = self._index.get(entry.identity)
            if existing is None:
                self.add(entry)
                continue
            duplicates.append(existing)
            if warn:
                logger.warning("Already authorized: %s", existing)
        return duplicates

    def lines(self) -> List[str]:
        return [entry.to_line() for entry in self._entries]

    def render(self) -> str:
        lines = self.lines()
        return "\n".join(lines) + ("\n" if lines else "")


def fetch_url(url: str, timeout: float = DEFAULT_TIMEOUT) -> bytes:
    req = Request(url, headers={"User-Agent": USER_AGENT})
    try:
        with urlopen(req, timeout=timeout) as resp:
            return resp.read()
    except HTTPError as e:
        if e.code == 404:
            raise SourceUnavailable(f"no such user ({url})") from e
        raise SourceUnavailable(f"HTTP error {e.code} when fetching {url}") from e
    except URLError as e:
        raise SourceUnavailable(f"URL error when fetching {url}: {e.reason}") from e
    except http.client.HTTPException as e:
        raise SourceUnavailable(f"bad response when fetching {url}: {e!r}") from e
    except OSError as e:
        raise SourceUnavailable(f"error when fetching {url}: {e}") from e


class KeySource:
    """Something that returns the authorized_keys text published for an identity."""

    def fetch(self, identity: str) -> bytes:
        raise NotImplementedError


class HTTPSource(KeySource):
    """Provider serving plain-text keys at a per-user URL."""

    def __init__(self, url_template: str, timeout: float = DEFAULT_TIMEOUT):
        self.url_template = url_template
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"HTTPSource({self.url_template!r})"

    def url_for(self, identity: str) -> str:
        if not identity:
            raise SourceUnavailable("empty identity")
        return self.url_template.format(quote(identity, safe=""))

    def fetch(self, identity: str) -> bytes:
        url = self.url_for(identity)
        logger.debug("Fetching %s", url)
        return fetch_url(url, timeout=self.timeout)


PROVIDERS = {
    "gh": "https://github.com/{}.keys",
    "gl": "https://gitlab.com/{}.keys",
    "lp": "https://launchpad.net/~{}/+sshkeys",
}

ALIASES = {
    "github": "gh",
    "gitlab": "gl",
    "launchpad": "lp",
}


def build_sources(timeout: float = DEFAULT_TIMEOUT) -> Dict[str, KeySource]:
    sources: Dict[str, KeySource] = {
        name: HTTPSource(template, timeout=timeout) for name, template in PROVIDERS.items()
    }
    for alias, name in ALIASES.items():
        sources[alias] = sources[name]
    return sources


SOURCES = build_sources()


def parse_target(arg: str, sources: Optional[Dict[str, KeySource]] = None) -> Tuple[str, str]:
    """Split a `source:identity` argument and check the source is known."""
    if sources is None:
        sources = SOURCES
    name, sep, identity = arg.partition(":")
    if not sep or not name or not identity:
        raise ValueError(f"expected SOURCE:ID, got {arg!r}")
    if name not in sources:
        raise ValueError(f"unknown source {name!r} (choose from {', '.join(sorted(sources))})")
    return name, identity


def _fetch_one(sources: Dict[str, KeySource], name: str, identity: str) -> bytes:
    try:
        return sources[name].fetch(identity)
    except SourceUnavailable as e:
        raise SourceUnavailable(f"{name}({identity}): {e}") from e


def _fetch_all(
    targets: Sequence[Tuple[str, str]],
    sources: Dict[str, KeySource],
    jobs: int,
) -> List[bytes]:
    if jobs <= 1 or len(targets) <= 1:
        return [_fetch_one(sources, name, identity) for name, identity in targets]
    with ThreadPoolExecutor(max_workers=jobs) as executor:
        futures = [
            executor.submit(_fetch_one, sources, name, identity)
            for name, identity in targets
        ]
        # Results are consumed in argument order whatever order they finish in.
        return [future.result() for future in futures]


def collect_remote_keys(
    targets: Sequence[str],
    sources: Optional[Dict[str, KeySource]] = None,
    jobs: int = 1,
) -> KeyTable:
    """Fetch every `source:identity` target and merge their keys in order.

    Each key is tagged with a provenance comment. When two targets publish
    the same key, the earlier target wins.
    """
    if sources is None:
        sources = SOURCES
    resolved = [parse_target(target, sources) for target in targets]
    payloads = _fetch_all(resolved, sources, jobs)

    remote = KeyTable()
    for (name, identity), data in zip(resolved, payloads):
        label = f"{name}({identity})"
        if len(data) < MIN_PAYLOAD:
            logger.info("%s: no keys published", label)
            continue
        tag = f"{PROVENANCE_TAG} {name}:{identity}"
        fetched = KeyTable(entry.with_comment(tag) for entry in iter_keys(data, source=label))
        remote.merge(fetched)
        logger.info("%s: %d keys", label, len(fetched))
    return remote


def default_authorized_keys() -> Path:
    return Path.home() / ".ssh" / "authorized_keys"


def load_local_keys(path: Optional[str] = None) -> KeyTable:
    """Read the local authorized_keys file into a table.

    `None` means ~/.ssh/authorized_keys, "NONE" skips the local file and "-"
    reads standard input. A missing file gives an empty table.
    """
    table = KeyTable()
    if path == SKIP_LOCAL:
        return table
    if path == STDIO:
        table.parse(sys.stdin.buffer.read(), source="<stdin>")
        return table

    local = Path(path).expanduser() if path else default_authorized_keys()
    try:
        data = local.read_bytes()
    except FileNotFoundError:
        logger.info("No local keys at %s", local)
        return table
    table.parse(data, source=str(local))
    return table


def write_keys(table: KeyTable, output: Optional[str] = None) -> None:
    """Write the table to `output`: a path, "-" for stdout, or the default file."""
    # Comments keep any non-UTF-8 bytes they were read with.
    data = table.render().encode("utf-8", errors="surrogateescape")
    if output == STDIO:
        sys.stdout.flush()
        sys.stdout.buffer.write(data)
        sys.stdout.buffer.flush()
        return

    target = Path(output).expanduser() if output else default_authorized_keys()
    target = target.resolve()
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    # mkstemp creates the file with mode 0600; the target is only replaced
    # once the new contents are fully on disk.
    fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, target)
    except BaseException:
        os.unlink(tmp)
        raise
    logger.info("Wrote %d keys to %s", len(table), target)


def run(
    targets: Sequence[str],
    output: Optional[str] = None,
    local: Optional[str] = None,
    warn: bool = True,
    jobs: int = 1,
    timeout: float = DEFAULT_TIMEOUT,
    sources: Optional[Dict[str, KeySource]] = None,
) -> KeyTable:
    if sources is None:
        sources = build_sources(timeout)
    remote = collect_remote_keys(targets, sources, jobs=jobs)
    if not remote:
        logger.warning("No public keys found for %s", ", ".join(targets))

    table = load_local_keys(local)
    table.merge(remote, warn=warn)
    write_keys(table, output)
    return table


def main(argv: List[str] | None = None) -> int:
    ap = argparse.ArgumentParser(
        prog="ssh-get-id",
        description="Fetch public SSH keys of remote users and merge them into authorized_keys",
    )
    ap.add_argument("targets", nargs="+", metavar="SOURCE:ID",
                    help=f"user to import, source is one of {', '.join(sorted(SOURCES))}")
    ap.add_argument("--output", "-o",
                    help="destination of keys: default ~/.ssh/authorized_keys, - for stdout")
    ap.add_argument("--local", "-l",
                    help=f"local keys path: default ~/.ssh/authorized_keys, {SKIP_LOCAL} to skip, - for stdin")
    ap.add_argument("--no-warn", "-w", action="store_true",
                    help="do not warn about keys that are already authorized")
    ap.add_argument("--jobs", "-j", type=int, default=1,
                    help="number of parallel fetches (default: 1)")
    ap.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT,
                    help=f"per-request timeout in seconds (default: {DEFAULT_TIMEOUT:g})")
    ap.add_argument("--verbose", "-v", action="store_true", help="log progress to stderr")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args = ap.parse_args(argv)

    if args.jobs < 1:
        ap.error("--jobs must be at least 1")
    for target in args.targets:
        try:
            parse_target(target)
        except ValueError as e:
            ap.error(str(e))

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        run(
            args.targets,
            output=args.output,
            local=args.local,
            warn=not args.no_warn,
            jobs=args.jobs,
            timeout=args.timeout,
        )
        return 0
    except (KeyParseError, SourceUnavailable, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
