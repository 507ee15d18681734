import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional
from dotenv import load_dotenv

from errors import ValidationError

load_dotenv()

STUDENT_CATEGORY = "student"
TEACHER_CATEGORY = "teacher"


@dataclass
class CostConfig:
    """Fine rate and per-category discount percentages."""

    overdue_fine: float = 1.0
    student_discount: float = 0.0
    teacher_discount: float = 0.0

    def __post_init__(self) -> None:
        for name, value in (("student", self.student_discount), ("teacher", self.teacher_discount)):
            if value < 0 or value > 100:
                raise ValidationError(f"{name} discount percentage must be between 0 and 100")
        if self.overdue_fine < 0:
            raise ValidationError("overdue fine must not be negative")

    @property
    def discounts(self) -> Dict[str, float]:
        return {
            STUDENT_CATEGORY: self.student_discount,
            TEACHER_CATEGORY: self.teacher_discount,
        }


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: Optional[str] = os.getenv("LIBRARY_DB_FILE")
    store_timeout: float = float(os.getenv("STORE_TIMEOUT", "10"))

    # Security settings
    bcrypt_rounds: int = int(os.getenv("BCRYPT_ROUNDS", "12"))

    # Cost settings
    overdue_fine: float = float(os.getenv("OVERDUE_FINE", "1.0"))
    student_discount: float = float(os.getenv("STUDENT_DISCOUNT", "0"))
    teacher_discount: float = float(os.getenv("TEACHER_DISCOUNT", "0"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Circulation Desk")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Pagination settings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "1000"))

    # Default permissions granted to newly created patrons
    patron_permissions: list = field(default_factory=lambda: [
        "patron:write", "patron:read", "books:read", "book:borrow", "book:return",
    ])

    def logging_level(self) -> int:
        """DEBUG forces debug logging, otherwise LOG_LEVEL applies."""
        if self.debug:
            return logging.DEBUG
        return getattr(logging, self.log_level.upper(), logging.INFO)

    def cost(self) -> CostConfig:
        return CostConfig(
            overdue_fine=self.overdue_fine,
            student_discount=self.student_discount,
            teacher_discount=self.teacher_discount,
        )


settings = Settings()
