"""Share link decoding and renaming.

Only the parts the pipeline needs: a flat field view of a link (used for
deduplication keys) and rewriting the display name carried inside a link.
Malformed links decode to an empty mapping and rename to themselves.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from urllib.parse import parse_qsl, quote, unquote, urlsplit

logger = logging.getLogger(__name__)

# Schemes where the userinfo is a password rather than a uuid
PASSWORD_SCHEMES = frozenset({"trojan", "hysteria2", "hy2", "anytls"})


def b64decode_text(data: str) -> str:
    """Decode standard or URL-safe base64, tolerating missing padding.

    Raises:
        ValueError: If ``data`` is not base64 or not UTF-8
    """
    data = data.strip()
    padded = data + "=" * (-len(data) % 4)
    altchars = b"-_" if ("-" in data or "_" in data) else None
    try:
        return base64.b64decode(padded, altchars=altchars, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ValueError(f"invalid base64: {e}") from e


def b64encode_text(text: str, *, urlsafe: bool = False) -> str:
    raw = text.encode("utf-8")
    if urlsafe:
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")
    return base64.b64encode(raw).decode("ascii")


def scheme_of(link: str) -> str:
    scheme, sep, _ = link.strip().partition("://")
    return scheme.lower() if sep else ""


def parse_link(link: str) -> dict[str, str]:
    """Decode a share link into a flat, lowercase-keyed field mapping.

    Common keys are ``scheme``, ``server``, ``port``, ``name``, plus
    ``uuid``/``password``/``username`` where the protocol has them. Query
    parameters appear both as ``query.<key>`` and, when not shadowed, as
    plain ``<key>``.

    Args:
        link: Share link, e.g. ``trojan://pw@host:443?sni=x#name``

    Returns:
        Field mapping; empty when the link cannot be decoded
    """
    scheme = scheme_of(link)
    if not scheme:
        return {}
    try:
        if scheme == "vmess":
            fields = _parse_vmess(link)
        elif scheme == "ss":
            fields = _parse_ss(link)
        elif scheme == "ssr":
            fields = _parse_ssr(link)
        else:
            fields = _parse_url(link, scheme)
    except (ValueError, TypeError) as e:
        logger.debug("Could not decode %s link: %s", scheme, e)
        return {}
    fields["scheme"] = scheme
    return fields


def _stringify(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _parse_vmess(link: str) -> dict[str, str]:
    payload = json.loads(b64decode_text(link.strip()[len("vmess://") :]))
    if not isinstance(payload, dict):
        raise ValueError("vmess payload is not an object")
    fields = {str(key).lower(): _stringify(value) for key, value in payload.items()}
    fields["server"] = fields.get("add", "")
    fields["uuid"] = fields.get("id", "")
    fields["name"] = fields.get("ps", "")
    fields.setdefault("port", "")
    return fields


def _with_query(fields: dict[str, str], query: str) -> dict[str, str]:
    for key, value in parse_qsl(query, keep_blank_values=True):
        key = key.lower()
        fields[f"query.{key}"] = value
        fields.setdefault(key, value)
    return fields


def _parse_ss(link: str) -> dict[str, str]:
    body = link.strip()[len("ss://") :]
    body, _, fragment = body.partition("#")
    name = unquote(fragment)

    if "@" not in body:
        # legacy: base64(method:password@host:port)
        body = b64decode_text(body.partition("?")[0])

    userinfo, _, rest = body.rpartition("@")
    hostport, _, query = rest.partition("?")
    hostport = hostport.rstrip("/")
    userinfo = unquote(userinfo)
    if ":" not in userinfo:
        userinfo = b64decode_text(userinfo)
    method, _, password = userinfo.partition(":")
    server, _, port = hostport.rpartition(":")

    fields = {
        "server": server.strip("[]"),
        "port": port,
        "method": method,
        "cipher": method,
        "password": password,
        "name": name,
    }
    return _with_query(fields, query)


def _parse_ssr(link: str) -> dict[str, str]:
    decoded = b64decode_text(link.strip()[len("ssr://") :])
    main, _, query = decoded.partition("/?")
    parts = main.rsplit(":", 5)
    if len(parts) != 6:
        raise ValueError("ssr link needs host:port:protocol:method:obfs:password")
    server, port, protocol, method, obfs, password = parts

    fields = {
        "server": server.strip("[]"),
        "port": port,
        "protocol": protocol,
        "method": method,
        "cipher": method,
        "obfs": obfs,
        "password": b64decode_text(password) if password else "",
    }
    for key, value in parse_qsl(query, keep_blank_values=True):
        key = key.lower()
        try:
            value = b64decode_text(value) if value else ""
        except ValueError:
            pass
        fields[f"query.{key}"] = value
        fields.setdefault(key, value)
    fields["name"] = fields.get("remarks", "")
    return fields


def _parse_url(link: str, scheme: str) -> dict[str, str]:
    parts = urlsplit(link.strip())
    fields = {
        "server": parts.hostname or "",
        "port": str(parts.port) if parts.port is not None else "",
        "name": unquote(parts.fragment),
    }
    username = unquote(parts.username or "")
    password = unquote(parts.password or "")
    fields["username"] = username
    if scheme in PASSWORD_SCHEMES:
        fields["password"] = username
    elif scheme in ("vless", "tuic", "vmess"):
        fields["uuid"] = username
        if password:
            fields["password"] = password
    else:
        fields["password"] = password
    return _with_query(fields, parts.query)


def rename_link(link: str, name: str) -> str:
    """Return ``link`` with its embedded display name replaced by ``name``.

    vmess rewrites the ``ps`` key, ssr rewrites the ``remarks`` parameter,
    everything else rewrites the URL fragment. Links that cannot be decoded
    are returned unchanged.
    """
    if not link or not name:
        return link
    scheme = scheme_of(link)
    if not scheme:
        return link
    try:
        if scheme == "vmess":
            return _rename_vmess(link, name)
        if scheme == "ssr":
            return _rename_ssr(link, name)
        return _rename_fragment(link, name)
    except (ValueError, TypeError) as e:
        logger.debug("Could not rename %s link: %s", scheme, e)
        return link


def _rename_vmess(link: str, name: str) -> str:
    payload = json.loads(b64decode_text(link.strip()[len("vmess://") :]))
    if not isinstance(payload, dict):
        raise ValueError("vmess payload is not an object")
    payload["ps"] = name
    return "vmess://" + b64encode_text(json.dumps(payload, ensure_ascii=False, separators=(",", ":")))


def _rename_ssr(link: str, name: str) -> str:
    decoded = b64decode_text(link.strip()[len("ssr://") :])
    main, _, query = decoded.partition("/?")
    params = [(key, value) for key, value in parse_qsl(query, keep_blank_values=True) if key != "remarks"]
    params.append(("remarks", b64encode_text(name, urlsafe=True)))
    query = "&".join(f"{key}={value}" for key, value in params)
    return "ssr://" + b64encode_text(f"{main}/?{query}", urlsafe=True)


def _rename_fragment(link: str, name: str) -> str:
    body, _, _ = link.partition("#")
    return f"{body}#{quote(name, safe='')}"

