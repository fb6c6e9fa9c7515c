"""Best-effort parsing utilities for raw HTTP requests."""
from __future__ import annotations
import json
import re
from typing import Dict, List, Tuple, Any
from urllib.parse import parse_qsl, urlsplit

_METHOD_RE = re.compile(r"^[A-Za-z]+$")


def split_raw_request(raw: str) -> Tuple[str, List[str], str]:
    """Split raw request text into request line, header lines and body.

    Lines are split on ``\\n`` with any trailing ``\\r`` removed. The body is
    everything after the first blank line; a request without a blank line has
    no body.
    """
    lines = [line.rstrip("\r") for line in raw.split("\n")]
    request_line = lines[0] if lines else ""
    header_lines: List[str] = []
    body_lines: List[str] = []
    in_body = False
    for line in lines[1:]:
        if in_body:
            body_lines.append(line)
        elif line == "":
            in_body = True
        else:
            header_lines.append(line)
    return request_line, header_lines, "\n".join(body_lines)


def parse_request_line(req_line: str) -> Tuple[str, str]:
    """Return (method, target) with GET and / as defaults."""
    parts = req_line.split()
    method = "GET"
    target = "/"
    if parts and _METHOD_RE.match(parts[0]):
        method = parts[0].upper()
        if len(parts) > 1:
            target = parts[1]
    return method, target


def parse_headers(header_lines: List[str]) -> Dict[str, str]:
    """Parse header lines into a dict, keeping the original header names."""
    headers: Dict[str, str] = {}
    for line in header_lines:
        if ":" in line:
            k, v = line.split(":", 1)
            k = k.strip()
            if k:
                headers[k] = v.strip()
    return headers


def get_header(headers: Dict[str, str], name: str) -> str | None:
    """Case-insensitive header lookup."""
    wanted = name.lower()
    for k, v in headers.items():
        if k.lower() == wanted:
            return v
    return None


def split_target(target: str) -> Tuple[str, Dict[str, str], str]:
    """Split a request target into (path, ordered query params, host).

    The host is only known for absolute targets such as
    ``http://example.com/path``; it is empty otherwise.
    """
    parts = None
    if target.startswith("http://") or target.startswith("https://"):
        try:
            parts = urlsplit(target)
        except ValueError:
            # Malformed authority, e.g. an unclosed IPv6 bracket
            parts = None
    if parts is not None:
        path, query, host = parts.path or "/", parts.query, parts.netloc
    else:
        path, _, query = target.partition("?")
        host = ""
    params: Dict[str, str] = {}
    if query:
        for key, value in parse_qsl(query, keep_blank_values=True):
            if key:
                params[key] = value
    return path or "/", params, host


def parse_body(body_text: str) -> Dict[str, Any]:
    """Parse a request body as JSON, then as form pairs, else keep it raw."""
    if not body_text.strip():
        return {}
    try:
        parsed = json.loads(body_text)
    except (json.JSONDecodeError, ValueError):
        parsed = None
    else:
        if isinstance(parsed, dict):
            return parsed
        return {"value": parsed}

    if "=" in body_text:
        form = {k: v for k, v in parse_qsl(body_text.strip(), keep_blank_values=True) if k}
        if form:
            return form
    return {"raw": body_text}
