#!/usr/bin/env python3
"""
Nightly Arrears Classification Entry Point

Reclassifies every loan on the book once, using the configuration from
LOANSVC_* environment variables (or .env), and exits non-zero when any loan
failed.
"""

import sys

from loan_servicing.config import get_config
from loan_servicing.engine import LoanServicingEngine
from loan_servicing.logging_config import setup_logging


def main() -> int:
    config = get_config()
    logger = setup_logging(config.log_level, config.log_format, log_file=config.log_file)

    engine = LoanServicingEngine.from_config(config)
    try:
        result = engine.run_nightly_classification()
        engine.flush_side_effects()
    except KeyboardInterrupt:
        logger.warning("Classification interrupted, cancelling pending work")
        engine.batch.cancel()
        engine.close(cancel_pending=True)
        return 130
    except Exception as e:
        logger.error(f"Nightly classification failed: {e}", exc_info=True)
        engine.close()
        return 1

    engine.close()

    for failure in result.failures:
        logger.error(f"Loan {failure.loan_id} failed: {failure.error_type}: {failure.message}")

    return 1 if result.failures else 0


if __name__ == "__main__":
    sys.exit(main())
