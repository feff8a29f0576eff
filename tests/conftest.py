import os, sys
from io import BytesIO

import boto3
import pytest
from moto import mock_aws
from PIL import Image
from PIL.PngImagePlugin import PngInfo

# Ensure project root on sys.path so `import photo_service...` works
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from photo_service.core.config import settings

GPS_IFD = 0x8825
MAKE_TAG = 0x010F
ORIENTATION_TAG = 0x0112


def _gradient(size):
    g = Image.linear_gradient("L").resize(size)
    return Image.merge("RGB", (g, g.transpose(Image.Transpose.FLIP_LEFT_RIGHT), g.transpose(Image.Transpose.FLIP_TOP_BOTTOM)))


def jpeg_bytes(size=(120, 90), orientation=None, with_gps=True) -> bytes:
    """A JPEG carrying camera make, optional orientation and a GPS block."""
    img = _gradient(size)
    exif = Image.Exif()
    exif[MAKE_TAG] = "AcmeCam"
    if orientation is not None:
        exif[ORIENTATION_TAG] = orientation
    if with_gps:
        exif[GPS_IFD] = {1: "N", 2: (40.0, 26.0, 46.0), 3: "W", 4: (79.0, 58.0, 56.0)}
    buf = BytesIO()
    img.save(buf, format="JPEG", quality=95, exif=exif)
    return buf.getvalue()


def _noise(size):
    # Noise keeps tiny test images above the minimum upload size
    return Image.merge("RGB", [Image.effect_noise(size, 64) for _ in range(3)])


def png_bytes(size=(64, 48), location_text=None) -> bytes:
    img = _noise(size)
    buf = BytesIO()
    if location_text:
        info = PngInfo()
        info.add_text("Location", location_text)
        img.save(buf, format="PNG", pnginfo=info)
    else:
        img.save(buf, format="PNG")
    return buf.getvalue()


def webp_bytes(size=(64, 48)) -> bytes:
    img = _noise(size)
    buf = BytesIO()
    img.save(buf, format="WEBP", quality=90)
    return buf.getvalue()


def gif_bytes(size=(32, 32), durations=(100, 150, 200), comment=b"shot at 40.7N 74.0W") -> bytes:
    frames = [_noise(size) for _ in durations]
    buf = BytesIO()
    frames[0].save(
        buf,
        format="GIF",
        save_all=True,
        append_images=frames[1:],
        duration=list(durations),
        loop=0,
        comment=comment,
    )
    return buf.getvalue()


def executable_bytes() -> bytes:
    # DOS/PE header followed by padding
    return b"MZ\x90\x00\x03\x00\x00\x00\x04\x00\x00\x00\xff\xff\x00\x00" + b"\x00" * 512


def create_photo_table(table_name: str, region: str) -> None:
    dynamodb = boto3.client("dynamodb", region_name=region)
    dynamodb.create_table(
        TableName=table_name,
        AttributeDefinitions=[
            {"AttributeName": "photo_id", "AttributeType": "S"},
            {"AttributeName": "owner_id", "AttributeType": "S"},
            {"AttributeName": "created_at", "AttributeType": "N"},
        ],
        KeySchema=[{"AttributeName": "photo_id", "KeyType": "HASH"}],
        BillingMode="PAY_PER_REQUEST",
        GlobalSecondaryIndexes=[
            {
                "IndexName": "by_owner_created",
                "KeySchema": [
                    {"AttributeName": "owner_id", "KeyType": "HASH"},
                    {"AttributeName": "created_at", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            }
        ],
    )


@pytest.fixture
def aws_mock(monkeypatch):
    with mock_aws():
        # Ensure our clients do not try to hit a custom endpoint in tests
        monkeypatch.setattr(settings, "aws_endpoint_url", None)
        monkeypatch.setattr(settings, "aws_region", "us-east-1")
        monkeypatch.setattr(settings, "bucket_name", "test-bucket")
        monkeypatch.setattr(settings, "table_name", "Photos")
        monkeypatch.setattr(settings, "public_base_url", "https://cdn.example.test")

        s3 = boto3.client("s3", region_name=settings.aws_region)
        s3.create_bucket(Bucket=settings.bucket_name)
        create_photo_table(settings.table_name, settings.aws_region)

        yield settings


def bucket_keys(prefix: str = "") -> list:
    s3 = boto3.client("s3", region_name=settings.aws_region)
    resp = s3.list_objects_v2(Bucket=settings.bucket_name, Prefix=prefix)
    return sorted(o["Key"] for o in resp.get("Contents", []))
