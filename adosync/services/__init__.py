"""Services"""

from adosync.services.ado_client import AdoClient
from adosync.services.credential_vault import CredentialVault
from adosync.services.field_mapper import FieldMappingEngine
from adosync.services.sync_service import SyncService
from adosync.services.token_cipher import TokenCipher

__all__ = ["AdoClient", "CredentialVault", "FieldMappingEngine", "SyncService", "TokenCipher"]
