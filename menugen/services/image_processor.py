# menugen/services/image_processor.py
from PIL import Image, UnidentifiedImageError
import io
import base64
import hashlib
import logging

logger = logging.getLogger(__name__)

# Maximum dimensions sent to the vision model
MAX_WIDTH = 1920
MAX_HEIGHT = 1080
JPEG_QUALITY = 85


def compute_fingerprint(image_bytes: bytes) -> str:
    """Stable content fingerprint used for upload deduplication"""
    return hashlib.sha256(image_bytes).hexdigest()


def validate_image_file(file_bytes: bytes) -> bool:
    """Check that the bytes decode as an image Pillow understands"""
    try:
        image = Image.open(io.BytesIO(file_bytes))
        image.verify()
        return True
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        logger.info(f"Rejected upload that is not a readable image: {e}")
        return False


def optimize_for_vision(image_bytes: bytes) -> str:
    """
    Flatten, downscale and re-encode a menu photo as JPEG for the vision model

    Returns a ``data:image/jpeg;base64,...`` URL.
    """
    image = Image.open(io.BytesIO(image_bytes))

    # Flatten transparency onto white; menus photographed as PNG often carry alpha
    if image.mode in ('RGBA', 'LA', 'P'):
        background = Image.new('RGB', image.size, (255, 255, 255))
        if image.mode == 'P':
            image = image.convert('RGBA')
        background.paste(image, mask=image.split()[-1])
        image = background
    elif image.mode not in ('RGB', 'L'):
        image = image.convert('RGB')

    width, height = image.size
    if width > MAX_WIDTH or height > MAX_HEIGHT:
        scale = min(MAX_WIDTH / width, MAX_HEIGHT / height)
        new_size = (int(width * scale), int(height * scale))
        image = image.resize(new_size, Image.Resampling.LANCZOS)
        logger.info(f"Resized menu image from {width}x{height} to {new_size[0]}x{new_size[1]}")

    output_buffer = io.BytesIO()
    image.save(output_buffer, format='JPEG', quality=JPEG_QUALITY, optimize=True)

    encoded = base64.b64encode(output_buffer.getvalue()).decode('utf-8')
    logger.info(f"Optimized image size: {len(encoded)} bytes (base64)")
    return f"data:image/jpeg;base64,{encoded}"
