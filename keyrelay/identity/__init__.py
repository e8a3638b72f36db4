"""
KeyRelay Identity — the delegating identity service.

Owns users, application registrations, browser sessions and short-lived
plugin tokens, and proxies authorized credential requests to the vault.
"""
