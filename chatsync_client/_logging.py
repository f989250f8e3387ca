# =============================================================================
# ChatSync Client -- Logging
# =============================================================================

import logging

logger = logging.getLogger("chatsync")
