"""QRIS payload to PNG rendering for deposit messages"""

import logging
from io import BytesIO
from typing import Optional

import qrcode
import qrcode.constants
from qrcode.main import QRCode

logger = logging.getLogger(__name__)


class QRCodeService:
    """Renders gateway QR payloads as PNG images sized for phone cameras"""

    TARGET_SIZE = 400

    @classmethod
    def generate_qr_png(cls, payload: str, box_size: int = 10, border: int = 4) -> Optional[BytesIO]:
        """Return a PNG buffer ready for ``send_photo``, or None if rendering fails"""
        if not payload or not payload.strip():
            logger.error("Empty QR payload")
            return None
        try:
            qr = QRCode(
                version=None,
                error_correction=qrcode.constants.ERROR_CORRECT_M,
                box_size=box_size,
                border=border,
            )
            qr.add_data(payload.strip())
            qr.make(fit=True)
            img = qr.make_image(fill_color="black", back_color="white")

            if img.size[0] < cls.TARGET_SIZE:
                img = img.resize((cls.TARGET_SIZE, cls.TARGET_SIZE), resample=0)

            buffered = BytesIO()
            img.save(buffered, format="PNG")
            buffered.seek(0)
            buffered.name = "qris.png"
            return buffered
        except (ValueError, OSError) as e:
            logger.error(f"QR code generation failed: {e}", exc_info=True)
            return None
