from __future__ import annotations

from typing import Protocol

DEFAULT_SHORTCUT = "Alt+Shift+V"

_KEY_ALIASES: dict[str, str] = {
    "CONTROL": "CTRL",
    "LCTRL": "CTRL",
    "RCTRL": "CTRL",
    "L_CONTROL": "CTRL",
    "R_CONTROL": "CTRL",
    "ALTGR": "ALT",
    "OPTION": "ALT",
    "META": "SUPER",
    "WIN": "SUPER",
    "WINDOWS": "SUPER",
    "CMD": "SUPER",
    "COMMAND": "SUPER",
    "CMDORCTRL": "COMMANDORCONTROL",
    "CMDORCONTROL": "COMMANDORCONTROL",
    "COMMANDORCTRL": "COMMANDORCONTROL",
    "RETURN": "ENTER",
    "ESCAPE": "ESC",
    "PGUP": "PAGEUP",
    "PGDN": "PAGEDOWN",
    "PGDOWN": "PAGEDOWN",
    "DEL": "DELETE",
    "INS": "INSERT",
    "PRIOR": "PAGEUP",
    "NEXT": "PAGEDOWN",
}

# Canonical spelling and order of modifier tokens.
_MODIFIERS: dict[str, str] = {
    "COMMANDORCONTROL": "CommandOrControl",
    "CTRL": "Ctrl",
    "ALT": "Alt",
    "SHIFT": "Shift",
    "SUPER": "Super",
}

_KEY_NAMES: dict[str, str] = {
    "ENTER": "Enter",
    "ESC": "Esc",
    "SPACE": "Space",
    "TAB": "Tab",
    "BACKSPACE": "Backspace",
    "PAGEUP": "PageUp",
    "PAGEDOWN": "PageDown",
    "DELETE": "Delete",
    "INSERT": "Insert",
    "HOME": "Home",
    "END": "End",
    "LEFT": "Left",
    "RIGHT": "Right",
    "UP": "Up",
    "DOWN": "Down",
}


class ShortcutRegistrar(Protocol):
    def register(self, accelerator: str) -> None: ...


def normalize_accelerator(seq: str | None, default: str = DEFAULT_SHORTCUT) -> str:
    """Normalize a shortcut string such as ``"cmdorctrl + shift+v"``.

    OS-specific modifier names collapse to ``Super``, the either-platform
    primary modifier to ``CommandOrControl``. Modifiers come first in a fixed
    order; unknown tokens pass through unchanged. Empty input yields ``default``.
    """
    if not seq:
        return default
    seq = seq.replace("＋", "+").replace("﹢", "+")
    modifiers: set[str] = set()
    keys: list[str] = []
    for raw in seq.split("+"):
        part = raw.strip()
        if not part:
            continue
        token = part.upper()
        token = _KEY_ALIASES.get(token, token)
        if token in _MODIFIERS:
            modifiers.add(token)
            continue
        keys.append(_key_name(part, token))
    parts = [name for tok, name in _MODIFIERS.items() if tok in modifiers] + keys
    if not parts:
        return default
    return "+".join(parts)


def _key_name(part: str, token: str) -> str:
    if token in _KEY_NAMES:
        return _KEY_NAMES[token]
    if len(token) == 1:
        return token
    if token[0] == "F" and token[1:].isdigit():
        return token
    return part
