"""KeyRelay — credential replay for legacy web logins."""

__version__ = "0.1.0"
