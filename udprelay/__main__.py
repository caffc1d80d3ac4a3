"""
Run the relay.

Usage:
    python -m udprelay

Equivalent to:
    uvicorn udprelay.transport.app:app --host 0.0.0.0 --port $PORT
"""

import uvicorn
from dotenv import load_dotenv

from udprelay.config import RelayConfig


def main() -> None:
    load_dotenv()
    config = RelayConfig.from_env()
    uvicorn.run(
        "udprelay.transport.app:app",
        host=config.host,
        port=config.port,
        ws_per_message_deflate=False,
    )


if __name__ == "__main__":
    main()
