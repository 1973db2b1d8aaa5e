"""User-facing wording for pipeline failures."""
from __future__ import annotations

AUTH_REQUIRED_MESSAGE = "Bạn cần đăng nhập để truy cập thông tin này. Vui lòng đăng nhập và thử lại. 🔐"
SECURITY_MESSAGE = (
    "Tôi không thể truy cập thông tin này vì lý do bảo mật. Vui lòng kiểm tra quyền truy cập của bạn. 🛡️"
)
SQL_FAILURE_MESSAGE = (
    "Tôi gặp khó khăn trong việc tìm kiếm thông tin. Bạn có thể thử hỏi theo cách khác không? 🔍"
)
GENERIC_MESSAGE = "Xin lỗi, tôi gặp một chút trục trặc. Bạn có thể thử hỏi lại được không? 😅"


class ErrorHandler:
    _MESSAGES = (
        ("Authentication required", AUTH_REQUIRED_MESSAGE),
        ("Security violation", SECURITY_MESSAGE),
        ("Failed to generate valid SQL", SQL_FAILURE_MESSAGE),
    )

    @classmethod
    def generate_error_response(cls, error_message: str) -> str:
        for marker, message in cls._MESSAGES:
            if marker in (error_message or ""):
                return message
        return GENERIC_MESSAGE
