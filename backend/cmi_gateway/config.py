"""
CMI Gateway Configuration Module

Loads environment variables for the payment callback service.
"""
from pydantic_settings import BaseSettings
from typing import List, Literal


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Security Notes:
    - The CMI store key is the shared secret for callback signatures
    - An empty store key makes every callback fail verification
    - Secrets are never logged, only whether they are set
    """

    # CMI Gateway Configuration
    cmi_store_key: str = ""
    cmi_client_id: str = ""
    cmi_gateway_url: str = "https://testpayment.cmi.co.ma/fim/est3Dgate"
    cmi_currency: str = "504"  # MAD
    cmi_lang: str = "fr"
    cmi_success_code: str = "00"
    cmi_hash_excluded_fields: List[str] = ["customData"]

    # Redirect targets handed to the gateway
    shop_url: str = "http://localhost:3000"
    ok_url: str = "http://localhost:3000/success"
    fail_url: str = "http://localhost:3000/failure"
    callback_url: str = "http://localhost:3000/api/payments/callback"

    # Transaction Store (Redis)
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = 5.0
    redis_connect_timeout: float = 10.0
    transaction_ttl_seconds: int = 3600

    # Outcome forwarding
    forward_endpoint_url: str = ""
    forward_api_key: str = ""
    forward_timeout_seconds: float = 10.0

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 3000

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
