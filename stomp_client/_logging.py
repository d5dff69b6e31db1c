# =============================================================================
# STOMP Client -- Logging
# =============================================================================

import logging

logger = logging.getLogger("stomp_client")
logger.addHandler(logging.NullHandler())
