from io import BytesIO

import pytest
from PIL import Image


def make_png(size=8, colour=(200, 30, 30, 255)):
    buf = BytesIO()
    Image.new("RGBA", (size, size), colour).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def png_bytes():
    return make_png()
