"""Run the signing key rotation timer as a standalone process."""

import logging
import time

from app.core.database import SessionLocal
from app.services.key_authority import key_authority
from app.services.key_rotation_worker import key_rotation_worker


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    key_authority.bind(SessionLocal).load()
    key_rotation_worker.bind(SessionLocal).start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        key_rotation_worker.stop()


if __name__ == "__main__":
    main()
