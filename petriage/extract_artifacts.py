from __future__ import annotations

import re
from typing import Callable, Dict, Iterable, List, Mapping

from petriage.extract_strings import ALL_SCOPE

PLACEHOLDER_DOMAIN = "example.com"

_URL_RE = re.compile(r"(?:https?|ftp|file)://[-a-zA-Z0-9+&@#/%?=~_|!:,.;]*[-a-zA-Z0-9+&@#/%=~_|]")
# Drive-letter paths only; UNC and relative paths are not reported.
_FILE_PATH_RE = re.compile(r"\b[a-z]:\\(?:[^\\/:*?\"<>|\r\n]+\\)*[^\\/:*?\"<>|\r\n]*", re.IGNORECASE)
_IPV4_RE = re.compile(r"\b(?:(?:25[0-5]|2[0-4]\d|1?\d?\d)\.){3}(?:25[0-5]|2[0-4]\d|1?\d?\d)\b")
_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,6}")
_REGISTRY_RE = re.compile(r"HKEY_[A-Z_]+\\[^\\\r\n]+(?:\\[^\\\r\n]+)*", re.IGNORECASE)
_DOMAIN_RE = re.compile(r"(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9][a-z0-9-]{0,61}[a-z0-9]", re.IGNORECASE)
_API_RE = re.compile(r"\b(?:Create|Open|Read|Write|Close|Delete|Find|Get|Set|Send|Receive|Put)[A-Z][a-zA-Z]+\b")
_METADATA_RE = re.compile(
    r"\b(?:CompanyName|FileDescription|FileVersion|InternalName|LegalCopyright|"
    r"OriginalFilename|ProductName|ProductVersion|Assembly Version|BuildDate)\b",
    re.IGNORECASE,
)
_INTERESTING_RE = re.compile(
    r"http|ftp|www|passw|key|secret|token|api|admin|root|user|login|temp|tmp|cache|log|cmd|exec|run|shell",
    re.IGNORECASE,
)

INTERESTING_MIN_LEN = 6
INTERESTING_MAX_LEN = 255


def _not_placeholder(m: str) -> bool:
    return PLACEHOLDER_DOMAIN not in m.lower()


def _ordered_unique(items: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(items))


def _matcher(rx: "re.Pattern[str]", *, keep: Callable[[str], bool] = lambda _: True, fold: bool = False):
    def run(text: str) -> List[str]:
        found = (m.group(0) for m in rx.finditer(text))
        if fold:
            found = (m.lower() for m in found)
        return _ordered_unique(m for m in found if keep(m))

    return run


def interesting_lines(text: str) -> List[str]:
    return _ordered_unique(
        line
        for line in text.split("\n")
        if INTERESTING_MIN_LEN <= len(line) <= INTERESTING_MAX_LEN and _INTERESTING_RE.search(line)
    )


# Kind name -> matcher. Order is the report order.
MATCHERS: Mapping[str, Callable[[str], List[str]]] = {
    "urls": _matcher(_URL_RE, keep=_not_placeholder),
    "file_paths": _matcher(_FILE_PATH_RE),
    "ip_addresses": _matcher(_IPV4_RE),
    "email_addresses": _matcher(_EMAIL_RE, keep=_not_placeholder),
    "registry_keys": _matcher(_REGISTRY_RE),
    "domains": _matcher(_DOMAIN_RE, fold=True),
    "api_calls": _matcher(_API_RE),
    "metadata": _matcher(_METADATA_RE),
    "interesting_strings": interesting_lines,
}


def extract_artifacts(text: str) -> Dict[str, List[str]]:
    """Run every matcher over one string stream; kinds with no matches are left out."""
    out: Dict[str, List[str]] = {}
    for kind, run in MATCHERS.items():
        found = run(text)
        if found:
            out[kind] = found
    return out


def extract_scoped_artifacts(section_streams: Mapping[str, str], whole_file_stream: str) -> Dict[str, Dict[str, List[str]]]:
    """One bag per section stream plus the whole-file bag under the "all" scope."""
    bags: Dict[str, Dict[str, List[str]]] = {}
    for scope, text in section_streams.items():
        bags[scope] = extract_artifacts(text)
    bags[ALL_SCOPE] = extract_artifacts(whole_file_stream)
    return bags
