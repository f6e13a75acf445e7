import logging
import sys
from typing import Any, Dict, Optional

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("marketsync")


class MarketplaceCallLogger:
    """Logs marketplace API calls with credential headers masked."""

    sensitive_keys = [
        "client_secret", "clientSecret", "access_token", "accessToken",
        "refresh_token", "refreshToken", "password", "authorization",
        "Authorization", "api_key", "apiKey", "x-api-key", "x-amz-access-token",
        "WM_SEC.ACCESS_TOKEN",
    ]

    def log_call(
        self,
        marketplace: str,
        description: str,
        request_data: Optional[Dict[str, Any]] = None,
        status: str = "info",
        error: Optional[str] = None
    ) -> Dict[str, Any]:
        log_entry = {
            "marketplace": marketplace,
            "description": description,
            "request_data": self._sanitize_credentials(request_data) if request_data else None,
            "status": status,
            "error": error
        }

        log_msg = f"[{marketplace}] {description}"
        if error:
            logger.error(f"{log_msg} - Error: {error}")
        else:
            logger.info(log_msg)
        if log_entry["request_data"]:
            logger.debug(f"{log_msg} headers={log_entry['request_data']}")

        return log_entry

    def _sanitize_credentials(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not data:
            return {}

        sanitized = data.copy()
        for key in self.sensitive_keys:
            if key in sanitized:
                value = str(sanitized[key])
                if len(value) > 8:
                    sanitized[key] = f"{value[:4]}...{value[-4:]}"
                else:
                    sanitized[key] = "***"

        return sanitized


call_logger = MarketplaceCallLogger()
