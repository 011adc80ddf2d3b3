"""Session and job orchestration for the Telegram volume bot."""
