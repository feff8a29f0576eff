"""Re-encode uploads into a canonical, metadata-free form.

Static images become WebP. Animated GIFs stay GIF so the animation survives,
but every frame is rebuilt without comments or application extensions.
Orientation from EXIF is applied to the pixels before the EXIF is dropped.
"""
from io import BytesIO
from typing import Optional, Tuple, List

from PIL import Image, ImageOps, ImageSequence

from ..core.config import Settings, settings as default_settings
from ..core.errors import TransformError
from .types import ProcessedImage

# Frame info keys that describe pixels rather than the capture
_GIF_FRAME_KEYS = ("transparency", "background")


class ImageTransformer:
    def __init__(self, settings: Settings = default_settings):
        self.settings = settings

    def transform(self, data: bytes, mime: str, max_size: Optional[Tuple[int, int]] = None) -> ProcessedImage:
        try:
            if mime == "image/gif":
                processed = self._transform_gif(data, max_size)
            else:
                processed = self._transform_static(data, max_size)
        except TransformError:
            raise
        except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
            raise TransformError(f"could not decode image: {e}", user_message="The image could not be processed.") from e

        if processed.size > self.settings.max_upload_bytes:
            raise TransformError(
                f"processed image is {processed.size} bytes, over the {self.settings.max_upload_bytes} byte limit",
                user_message="The processed image is too large.",
            )
        return processed

    def _transform_static(self, data: bytes, max_size: Optional[Tuple[int, int]]) -> ProcessedImage:
        with Image.open(BytesIO(data)) as src:
            src.load()
            img = ImageOps.exif_transpose(src)
            if max_size:
                img.thumbnail(max_size, Image.Resampling.LANCZOS)
            img = _webp_mode(img)
            # Drop everything Pillow might carry over (exif, xmp, icc, comments)
            img.info = {}

            out = BytesIO()
            img.save(out, format="WEBP", quality=self.settings.webp_quality, exif=b"")
            width, height = img.size

        return ProcessedImage(
            data=out.getvalue(),
            mime_type="image/webp",
            width=width,
            height=height,
            original_size=len(data),
        )

    def _transform_gif(self, data: bytes, max_size: Optional[Tuple[int, int]]) -> ProcessedImage:
        frames: List[Image.Image] = []
        durations: List[int] = []
        with Image.open(BytesIO(data)) as src:
            loop = src.info.get("loop")
            for frame in ImageSequence.Iterator(src):
                durations.append(int(frame.info.get("duration", 0)))
                clean = frame.copy()
                clean.info = {k: frame.info[k] for k in _GIF_FRAME_KEYS if k in frame.info}
                if max_size:
                    clean.thumbnail(max_size, Image.Resampling.LANCZOS)
                frames.append(clean)

        if not frames:
            raise TransformError("GIF contains no frames", user_message="The image could not be processed.")

        save_kw = {"duration": durations if len(durations) > 1 else durations[0]}
        if loop is not None:
            save_kw["loop"] = loop
        out = BytesIO()
        frames[0].save(out, format="GIF", save_all=True, append_images=frames[1:], **save_kw)
        width, height = frames[0].size
        return ProcessedImage(
            data=out.getvalue(),
            mime_type="image/gif",
            width=width,
            height=height,
            original_size=len(data),
            frame_count=len(frames),
        )


def _webp_mode(img: Image.Image) -> Image.Image:
    if img.mode in ("RGB", "RGBA"):
        return img
    if img.mode in ("LA", "PA") or (img.mode == "P" and "transparency" in img.info):
        return img.convert("RGBA")
    return img.convert("RGB")
