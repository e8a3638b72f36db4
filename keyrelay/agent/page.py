"""
Page model the page agent runs against.

``Page`` is the narrow surface the agent needs from a loaded document.
``FormPage`` implements it in memory: forms made of named fields, located
with ``tag[name='x']`` selectors (the form used by login schemas). It drives
agents outside a browser, e.g. from scripted page loads and tests.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

_LOCATOR = re.compile(r"""^(?P<tag>[a-z]+)?\[name=['"]?(?P<name>[^'"\]]+)['"]?\]$""")


@dataclass
class Field:
    tag: str
    name: str
    kind: str = "text"
    value: str = ""
    options: list[str] = field(default_factory=list)


@dataclass
class Form:
    id: str
    fields: list[Field]
    submissions: int = 0
    handlers: list[Callable[[Form], None]] = field(default_factory=list)


class Page(Protocol):
    origin: str

    def query(self, locator: str) -> Field | None: ...

    def form_of(self, target: Field) -> Form | None: ...

    def text(self) -> str: ...

    def on_submit(self, form: Form, callback: Callable[[Form], None]) -> None: ...

    def submit(self, form: Form) -> None: ...


def parse_locator(locator: str) -> tuple[str | None, str]:
    """Split ``input[name='username']`` into ``("input", "username")``."""
    m = _LOCATOR.match(locator.strip())
    if not m:
        raise ValueError(f"Unsupported locator: {locator}")
    return m.group("tag"), m.group("name")


class FormPage:
    """In-memory document: some text plus zero or more forms."""

    def __init__(self, origin: str, forms: list[Form] | None = None, text: str = "") -> None:
        self.origin = origin
        self.forms = list(forms or [])
        self._text = text

    def add_form(self, form_id: str, fields: list[Field]) -> Form:
        form = Form(form_id, fields)
        self.forms.append(form)
        return form

    def query(self, locator: str) -> Field | None:
        tag, name = parse_locator(locator)
        for form in self.forms:
            for f in form.fields:
                if f.name == name and (tag is None or f.tag == tag):
                    return f
        return None

    def form_of(self, target: Field) -> Form | None:
        for form in self.forms:
            if any(f is target for f in form.fields):
                return form
        return None

    def text(self) -> str:
        return self._text

    def fill(self, values: dict[str, str]) -> None:
        """Type values into fields by name, as a user would."""
        for name, value in values.items():
            target = self.query(f"[name='{name}']")
            if target is None:
                raise KeyError(name)
            target.value = value

    def on_submit(self, form: Form, callback: Callable[[Form], None]) -> None:
        form.handlers.append(callback)

    def submit(self, form: Form) -> None:
        for handler in list(form.handlers):
            handler(form)
        form.submissions += 1


def login_page(origin: str, *, with_role: bool = False, text: str = "Please sign in") -> FormPage:
    fields = [
        Field("input", "username"),
        Field("input", "password", kind="password"),
    ]
    if with_role:
        fields.append(Field("select", "role", kind="select", options=["user", "admin"]))
    return FormPage(origin, [Form("login", fields)], text=text)


def change_password_page(origin: str, *, confirm: bool = True, text: str = "") -> FormPage:
    fields = [
        Field("input", "current_password", kind="password"),
        Field("input", "new_password", kind="password"),
    ]
    if confirm:
        fields.append(Field("input", "confirm_password", kind="password"))
    return FormPage(origin, [Form("change-password", fields)], text=text)


def content_page(origin: str, text: str = "") -> FormPage:
    return FormPage(origin, text=text)
