from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class AuthChallenge:
    scheme: str
    params: dict[str, str]


def bearer_challenge_params(headers: list[str] | str | None) -> dict[str, str]:
    challenges = parse_www_authenticate(headers)
    bearer = next((c for c in challenges if c.scheme == "bearer"), None)
    if bearer is None:
        return {}
    return dict(bearer.params)


def parse_www_authenticate(headers: list[str] | str | None) -> list[AuthChallenge]:
    if headers is None:
        return []
    values = [headers] if isinstance(headers, str) else headers
    challenges: list[AuthChallenge] = []

    for value in values:
        current_scheme: str | None = None
        current_params: dict[str, str] = {}
        for part in _split_quoted_commas(value):
            token, _, rest = part.partition(" ")
            starts_new = bool(rest) and "=" not in token
            if starts_new:
                if current_scheme is not None:
                    challenges.append(AuthChallenge(current_scheme, current_params))
                current_scheme = token.lower()
                current_params = _parse_param_fragment(rest)
                continue

            if current_scheme is None:
                if "=" not in part and part:
                    current_scheme = part.lower()
                    current_params = {}
                continue

            current_params.update(_parse_param_fragment(part))

        if current_scheme is not None:
            challenges.append(AuthChallenge(current_scheme, current_params))

    return challenges


def _split_quoted_commas(value: str) -> list[str]:
    parts: list[str] = []
    buf: list[str] = []
    in_quotes = False
    escaped = False
    for ch in value:
        if escaped:
            buf.append(ch)
            escaped = False
            continue
        if ch == "\\" and in_quotes:
            buf.append(ch)
            escaped = True
            continue
        if ch == '"':
            buf.append(ch)
            in_quotes = not in_quotes
            continue
        if ch == "," and not in_quotes:
            part = "".join(buf).strip()
            if part:
                parts.append(part)
            buf = []
            continue
        buf.append(ch)
    part = "".join(buf).strip()
    if part:
        parts.append(part)
    return parts


def _parse_param_fragment(fragment: str) -> dict[str, str]:
    out: dict[str, str] = {}
    i = 0
    n = len(fragment)
    while i < n:
        while i < n and (fragment[i].isspace() or fragment[i] == ","):
            i += 1
        j = i
        while j < n and (fragment[j].isalnum() or fragment[j] in "-_"):
            j += 1
        if j == i:
            break
        key = fragment[i:j].lower()
        i = j
        while i < n and fragment[i].isspace():
            i += 1
        if i >= n or fragment[i] != "=":
            break
        i += 1
        while i < n and fragment[i].isspace():
            i += 1
        if i < n and fragment[i] == '"':
            i += 1
            chars: list[str] = []
            while i < n:
                ch = fragment[i]
                if ch == "\\" and i + 1 < n:
                    chars.append(fragment[i + 1])
                    i += 2
                    continue
                if ch == '"':
                    i += 1
                    break
                chars.append(ch)
                i += 1
            value = "".join(chars)
        else:
            k = i
            while k < n and not fragment[k].isspace() and fragment[k] != ",":
                k += 1
            value = fragment[i:k]
            i = k
        out[key] = value
    return out
