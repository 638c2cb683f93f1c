# SealVault - Client Module
# httpx transport to the vault sync server

from .transport import VaultServerClient, raise_for_status

__all__ = ["VaultServerClient", "raise_for_status"]
