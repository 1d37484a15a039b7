"""
Objective: Authentication management for Azure SQL targets using Service Principals.
"""
import os
from azure.identity import ClientSecretCredential
from typing import Optional

# Environment variable keys
ENV_TENANT = ["DBAKIT_SP_TENANT", "AZURE_TENANT_ID"]
ENV_CLIENT = ["DBAKIT_SP_CLIENT_ID", "AZURE_CLIENT_ID"]
ENV_SECRET = ["DBAKIT_SP_CLIENT_SECRET", "AZURE_CLIENT_SECRET"]

SQL_COPT_SS_ACCESS_TOKEN = 1256
DATABASE_SCOPE = "https://database.windows.net/.default"


def get_env_value(keys):
    for k in keys:
        if os.environ.get(k):
            return os.environ.get(k)
    return None


class AuthManager:
    def __init__(self, tenant_id: str = None, client_id: str = None, client_secret: str = None):
        self.tenant_id = tenant_id or get_env_value(ENV_TENANT)
        self.client_id = client_id or get_env_value(ENV_CLIENT)
        self.client_secret = client_secret or get_env_value(ENV_SECRET)
        self.credential = None

        if self.has_sp_credentials():
            try:
                self.credential = ClientSecretCredential(self.tenant_id, self.client_id, self.client_secret)
            except Exception as e:
                print(f"WARN: Failed to create ClientSecretCredential: {e}")

    def get_token_credential(self) -> Optional[ClientSecretCredential]:
        return self.credential

    def get_access_token(self, resource: str = DATABASE_SCOPE) -> Optional[bytes]:
        if self.credential:
            token = self.credential.get_token(resource).token
            # ODBC expects UTF-16LE bytes for the token
            return token.encode("utf-16-le")
        return None

    def connect_attrs(self) -> dict:
        """Returns the pyodbc attrs_before mapping carrying the access token, if any."""
        token_bytes = self.get_access_token()
        if token_bytes:
            return {SQL_COPT_SS_ACCESS_TOKEN: token_bytes}
        return {}

    def has_sp_credentials(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)
