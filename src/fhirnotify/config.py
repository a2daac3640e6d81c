"""Backend configuration via environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Backend
    backend_identifier: str = "default-fhir"

    # Payload extension carrying the subject template next to the body
    subject_extension_url: str | None = (
        "http://fhirnotify.dev/fhir/StructureDefinition/email-notification-subject"
    )

    # Terminal-state setters verify the current status unless told otherwise
    check_preconditions: bool = True

    # Queries
    default_page_size: int = 50

    # Logging
    log_level: str = "info"
    json_logs: bool = False

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "FHIRNOTIFY_",
    }


settings = Settings()
