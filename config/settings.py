"""
Threadline Configuration Settings
"""
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sources (use THREADLINE_ prefix)
    chat_db_path: Path = Field(
        default=Path("./data/user_data/chat.db"),
        alias="THREADLINE_CHAT_DB_PATH",
        description="Messages database, or a copy of ~/Library/Messages/chat.db"
    )
    contacts_vcf_path: Path = Field(
        default=Path("./data/user_data/contacts.vcf"),
        alias="THREADLINE_CONTACTS_VCF_PATH",
        description="vCard export of the address book"
    )

    # Identity resolution
    default_country_code: str = Field(
        default="1",
        alias="THREADLINE_DEFAULT_COUNTRY_CODE",
        description="Country code for phone numbers stored without one"
    )
    self_display_name: str = Field(
        default="Me",
        alias="THREADLINE_SELF_NAME",
        description="Name shown for your own messages"
    )

    # Conversation assembly
    conversation_limit: int = Field(default=3, alias="THREADLINE_CONVERSATION_LIMIT")
    message_limit: int = Field(default=20, alias="THREADLINE_MESSAGE_LIMIT")  # per conversation
    extract_attributed_body: bool = Field(
        default=True,
        alias="THREADLINE_EXTRACT_ATTRIBUTED_BODY",
        description="Recover text from attributedBody when message.text is empty (macOS 13+)"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="THREADLINE_LOG_LEVEL")

    # Server
    port: int = Field(default=8000, alias="THREADLINE_PORT")
    host: str = Field(default="0.0.0.0", alias="THREADLINE_HOST")

    @property
    def chat_db_available(self) -> bool:
        """Check if the Messages database exists."""
        return Path(self.chat_db_path).expanduser().exists()

    @property
    def contacts_available(self) -> bool:
        """Check if the contact export exists."""
        return Path(self.contacts_vcf_path).expanduser().exists()


settings = Settings()
