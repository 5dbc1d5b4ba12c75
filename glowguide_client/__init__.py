from .client import (
    GlowGuideClient,
    GlowGuideClientError,
    ImageSelectionError,
    REAL_ANALYSIS_ID_KEY,
    TEMP_ANALYSIS_KEY,
    encode_image_file,
    format_countdown,
)
from .storage import FileSessionStorage, SessionStorage

__all__ = [
    'GlowGuideClient',
    'GlowGuideClientError',
    'ImageSelectionError',
    'REAL_ANALYSIS_ID_KEY',
    'TEMP_ANALYSIS_KEY',
    'encode_image_file',
    'format_countdown',
    'FileSessionStorage',
    'SessionStorage',
]
