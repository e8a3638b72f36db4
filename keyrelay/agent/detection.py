"""
Form finders and success predicates.

Success detection is heuristic: "the login form is gone" or "a known success
message is on the page". Predicates take a Page and return bool, so a
stricter signal can be passed to the PageAgent without touching its state
machine.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from keyrelay.agent.page import Field, Form, Page

SuccessPredicate = Callable[[Page], bool]

USERNAME_LOCATOR = "input[name='username']"
PASSWORD_LOCATOR = "input[name='password']"
CURRENT_PASSWORD_LOCATOR = "input[name='current_password']"
NEW_PASSWORD_LOCATOR = "input[name='new_password']"

PASSWORD_CHANGED_MARKERS = (
    "password changed",
    "password updated",
    "password has been changed",
    "password has been updated",
    "password successfully",
)


def _locator(schema: dict[str, Any] | None, name: str, default: str) -> str:
    if schema and name in schema:
        return schema[name]["selector"]
    return default


def find_login_form(page: Page, schema: dict[str, Any] | None = None) -> Form | None:
    """Form holding both a username and a password field, else None."""
    username = page.query(_locator(schema, "username", USERNAME_LOCATOR))
    password = page.query(_locator(schema, "password", PASSWORD_LOCATOR))
    if username is None or password is None:
        return None
    return page.form_of(username) or page.form_of(password)


def find_change_form(page: Page) -> tuple[Form, Field] | None:
    """``(form, new_password_field)`` when a password-change form is present.

    A confirmation field is optional.
    """
    current = page.query(CURRENT_PASSWORD_LOCATOR)
    new = page.query(NEW_PASSWORD_LOCATOR)
    if current is None or new is None:
        return None
    form = page.form_of(current) or page.form_of(new)
    if form is None:
        return None
    return form, new


def login_form_absent(page: Page) -> bool:
    return find_login_form(page) is None


def password_change_succeeded(page: Page) -> bool:
    text = page.text().lower()
    if any(marker in text for marker in PASSWORD_CHANGED_MARKERS):
        return True
    return find_change_form(page) is None
