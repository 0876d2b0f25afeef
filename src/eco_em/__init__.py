import logging
import sys

__version__ = "0.1.0"

# Console output for every eco_em.* logger
console_handler = logging.StreamHandler(sys.stdout)
console_handler.setLevel(logging.DEBUG)
formatter = logging.Formatter(
    "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
console_handler.setFormatter(formatter)

# Attached to the package logger, not the root logger; per-iteration
# progress is DEBUG and stays hidden unless the level is lowered
package_logger = logging.getLogger(__name__)
package_logger.setLevel(logging.INFO)
package_logger.addHandler(console_handler)
