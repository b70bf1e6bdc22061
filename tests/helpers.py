"""Test helpers shared across modules."""

import io

from PIL import Image

IDLE_TIMEOUT = 60.0

PDF_BYTES = (
    b"%PDF-1.4\n"
    b"1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
    b"2 0 obj\n<< /Type /Pages /Kids [] /Count 0 >>\nendobj\n"
    b"trailer\n<< /Root 1 0 R >>\n%%EOF\n"
)


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_image(fmt: str = "PNG", size=(10, 10)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, (200, 30, 30)).save(buf, format=fmt)
    return buf.getvalue()


def split_into(data: bytes, count: int) -> list:
    """Split data into count contiguous chunks, the last one taking the remainder."""
    step = len(data) // count
    chunks = [data[i * step:(i + 1) * step] for i in range(count - 1)]
    chunks.append(data[(count - 1) * step:])
    return chunks


def make_multi_picture_jpeg(size=(10, 10)) -> bytes:
    """Two-frame MPO file, a JPEG with an MPF block as phone cameras write them."""
    buf = io.BytesIO()
    first = Image.new("RGB", size, (200, 30, 30))
    second = Image.new("RGB", size, (30, 30, 200))
    first.save(buf, format="MPO", save_all=True, append_images=[second])
    return buf.getvalue()
