# =============================================================================
# channels-api -- Package Logger
# =============================================================================

import logging

logger = logging.getLogger("channels_api")
