import logging

from src.application.hold_sweeper import HoldSweeper
from src.infrastructure import config
from src.infrastructure.db.session import SessionLocal


def main() -> None:
    logging.basicConfig(level=config.LOG_LEVEL)
    db = SessionLocal()
    try:
        result = HoldSweeper(db).sweep()
        print(
            f"Sweep complete: {len(result.released_slot_ids)} slots released, "
            f"{len(result.failed_payment_ids)} pending payments failed."
        )
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
