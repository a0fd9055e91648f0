"""
Image resolver / relay 测试配置文件

这个文件包含 pytest fixtures（测试夹具）和共用的辅助函数。

关键概念：
- httpx.MockTransport：替代真实网络，handler 决定每个请求的响应
- FakeClock：手动推进的时钟，用来测试缓存过期
- 所有 fixture 都是同步的，异步测试用 @pytest.mark.asyncio 标记
"""

import sys
from io import BytesIO
from pathlib import Path

import httpx
import pytest
from PIL import Image

# 添加 backend 目录到 Python 路径
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from image_resolver.cache import ImageCache
from image_resolver.environment import Environment
from image_resolver.refresh import RefreshScheduler

STORAGE_HOST = "my-bus.storage-te.com"
STORAGE_URL = f"https://{STORAGE_HOST}/photos/bus.jpg"
HOSTED_ORIGIN = "https://contracts.example"


# ============================================
# Helpers
# ============================================

class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_image_bytes(fmt: str = "PNG", size=(4, 4), color=(200, 30, 30)) -> bytes:
    """生成一张真实的小图片"""
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


def make_client(handler, **kwargs) -> httpx.AsyncClient:
    """用 MockTransport 创建 httpx 客户端"""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), **kwargs)


class RecordingHandler:
    """
    记录所有请求的 MockTransport handler。

    使用方式：
    ```python
    handler = RecordingHandler(lambda req: httpx.Response(200, content=b"x"))
    client = make_client(handler)
    ...
    assert handler.count == 1
    ```
    """

    def __init__(self, respond):
        self.respond = respond
        self.requests = []

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        return self.respond(request)

    @property
    def count(self) -> int:
        return len(self.requests)


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def png_bytes():
    return make_image_bytes("PNG")


@pytest.fixture
def jpeg_bytes():
    return make_image_bytes("JPEG")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dev_env():
    """开发环境：无退避等待，便于快速测试"""
    return Environment.development_preset(backoff_unit=0.0, max_attempts=2, timeout=1.0)


@pytest.fixture
def hosted_env():
    """托管环境：走同源 /relay"""
    return Environment.hosted_preset(HOSTED_ORIGIN, backoff_unit=0.0, max_attempts=2, timeout=1.0)


@pytest.fixture
def cache(clock):
    return ImageCache(max_entries=10, ttl_seconds=300, clock=clock)


@pytest.fixture(autouse=True)
def reset_refresh_singleton():
    """每个测试结束后清理全局 refresh 会话"""
    yield
    RefreshScheduler._active = None
