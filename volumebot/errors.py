class VolumeBotError(Exception):
    pass


class StoreDecryptError(VolumeBotError):
    """Session file failed authentication or could not be parsed."""


class ChainError(VolumeBotError):
    pass


class SwapError(ChainError):
    pass


class TokenNotFound(VolumeBotError):
    def __init__(self, mint: str):
        super().__init__(f"Token not found: {mint}")
        self.mint = mint


class OracleUnavailable(VolumeBotError):
    pass


class TelegramError(VolumeBotError):
    """Bot API answered ok=false, or with something that is not an API envelope."""

    def __init__(self, method: str, description: str):
        super().__init__(f"Telegram API error {method}: {description}")
        self.method = method
        self.description = description

    @property
    def not_modified(self) -> bool:
        return "message is not modified" in self.description
