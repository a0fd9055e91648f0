"""
RefreshScheduler 测试

覆盖：状态机、可见性跳过、熔断、单例会话
"""

import asyncio

import httpx
import pytest

from conftest import make_client
from image_resolver.environment import Environment
from image_resolver.loader import ImageLoader
from image_resolver.payload import ImagePayload
from image_resolver.refresh import RefreshScheduler, SchedulerState, watch_data_ready

REFS = [
    "https://my-bus.storage-te.com/photos/bus.jpg",
    "https://my-bus.storage-te.com/photos/driver.jpg",
]


class FakeSurface:
    def __init__(self, sources=REFS, visible=True):
        self.sources = list(sources)
        self.visible = visible
        self.replaced = {}

    def is_visible(self):
        return self.visible

    def image_sources(self):
        return list(self.sources)

    def replace_source(self, old, new):
        self.replaced[old] = new


class FakeLoader:
    def __init__(self, mode="ok"):
        self.mode = mode
        self.calls = []

    async def load_or_none(self, reference, **kwargs):
        self.calls.append((reference, kwargs))
        if self.mode == "raise":
            raise RuntimeError("refresh exploded")
        if self.mode == "none":
            return None
        return ImagePayload(b"fresh", "image/png")


@pytest.fixture
def env():
    return Environment.development_preset(refresh_interval=0.01, refresh_max_failures=3)


async def wait_for_state(scheduler, state, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while scheduler.state != state:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"scheduler stuck in {scheduler.state}")
        await asyncio.sleep(0.005)


# ============================================
# 1. Tick 行为
# ============================================

class TestTick:

    @pytest.mark.asyncio
    async def test_tick_refreshes_visible_images(self, env):
        """测试：刷新时带 _refresh 参数并绕过缓存"""
        surface, loader = FakeSurface(), FakeLoader()
        scheduler = RefreshScheduler(loader, surface, env, interval=60)
        scheduler.start()

        assert await scheduler.tick() is True
        scheduler.stop()

        assert set(surface.replaced) == set(REFS)
        assert all(v.startswith("data:image/png;base64,") for v in surface.replaced.values())
        reference, kwargs = loader.calls[0]
        assert "_refresh=" in reference
        assert kwargs["bypass_cache"] is True
        assert kwargs["bust"]

    @pytest.mark.asyncio
    async def test_hidden_view_skips_network(self, env):
        """测试：页面不可见时跳过，不产生网络请求"""
        loader = FakeLoader()
        scheduler = RefreshScheduler(loader, FakeSurface(visible=False), env, interval=60)
        scheduler.start()

        assert await scheduler.tick() is True
        scheduler.stop()

        assert loader.calls == []
        assert scheduler.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_data_urls_are_skipped(self, env):
        loader = FakeLoader()
        surface = FakeSurface(sources=["data:image/png;base64,AAAA", ""])
        scheduler = RefreshScheduler(loader, surface, env, interval=60)
        scheduler.start()

        assert await scheduler.tick() is True
        scheduler.stop()
        assert loader.calls == []

    @pytest.mark.asyncio
    async def test_success_resets_failure_counter(self, env):
        loader = FakeLoader(mode="none")
        scheduler = RefreshScheduler(loader, FakeSurface(), env, interval=60)
        scheduler.start()

        assert await scheduler.tick() is False
        assert await scheduler.tick() is False
        loader.mode = "ok"
        assert await scheduler.tick() is True
        scheduler.stop()

        assert scheduler.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_tick_when_stopped_does_nothing(self, env):
        loader = FakeLoader()
        scheduler = RefreshScheduler(loader, FakeSurface(), env)

        assert await scheduler.tick() is False
        assert loader.calls == []


# ============================================
# 2. 熔断
# ============================================

class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_opens_after_three_failed_ticks(self, env):
        """测试：连续 3 次失败后自动停止，之后不再有自动 tick"""
        loader = FakeLoader(mode="raise")
        scheduler = RefreshScheduler(loader, FakeSurface(), env)
        scheduler.start()

        await wait_for_state(scheduler, SchedulerState.CIRCUIT_OPEN)
        assert scheduler.tick_count == 3
        assert scheduler.consecutive_failures == 3

        assert await scheduler.tick() is False
        await asyncio.sleep(0.05)
        assert scheduler.tick_count == 3
        assert len(loader.calls) == 3

    @pytest.mark.asyncio
    async def test_start_refused_until_reset(self, env):
        scheduler = RefreshScheduler(FakeLoader(mode="none"), FakeSurface(), env)
        scheduler.start()
        await wait_for_state(scheduler, SchedulerState.CIRCUIT_OPEN)

        assert scheduler.start() is False
        scheduler.reset()
        assert scheduler.state == SchedulerState.STOPPED
        assert scheduler.start() is True
        scheduler.stop()


# ============================================
# 3. 生命周期
# ============================================

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, env):
        scheduler = RefreshScheduler(FakeLoader(), FakeSurface(), env, interval=60)

        assert scheduler.start() is True
        assert scheduler.start() is False
        scheduler.stop()
        assert scheduler.state == SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_second_session_stops_first(self, env):
        """测试：同一时间只允许一个刷新会话"""
        first = RefreshScheduler(FakeLoader(), FakeSurface(), env, interval=60)
        second = RefreshScheduler(FakeLoader(), FakeSurface(), env, interval=60)

        first.start()
        second.start()

        assert first.state == SchedulerState.STOPPED
        assert second.running
        assert RefreshScheduler._active is second
        second.stop()
        assert RefreshScheduler._active is None

    @pytest.mark.asyncio
    async def test_stop_tears_down_timer(self, env):
        loader = FakeLoader()
        scheduler = RefreshScheduler(loader, FakeSurface(), env)
        scheduler.start()
        await asyncio.sleep(0.05)
        scheduler.stop()
        calls = len(loader.calls)

        await asyncio.sleep(0.05)
        assert len(loader.calls) == calls

    @pytest.mark.asyncio
    async def test_watch_data_ready(self, env):
        scheduler = RefreshScheduler(FakeLoader(), FakeSurface(), env, interval=60)

        watch_data_ready(True, scheduler)
        assert scheduler.running
        watch_data_ready(False, scheduler)
        assert scheduler.state == SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_refresh_now_reports_count(self, env):
        """测试：手动刷新返回成功数量"""
        surface = FakeSurface(sources=REFS + ["data:image/png;base64,AA"])
        scheduler = RefreshScheduler(FakeLoader(), surface, env)

        assert await scheduler.refresh_now() == 2

    @pytest.mark.asyncio
    async def test_stop_mid_pass_cancels_loads(self, env, cache, png_bytes):
        """测试：刷新进行中调用 stop()，正在进行的加载被取消，不写缓存"""
        started, finished = [], []

        async def handler(request):
            started.append(request)
            await asyncio.sleep(0.2)
            finished.append(request)
            return httpx.Response(200, content=png_bytes, headers={"Content-Type": "image/png"})

        loader = ImageLoader(env, cache, client=make_client(handler))
        surface = FakeSurface()
        scheduler = RefreshScheduler(loader, surface, env)
        scheduler.start()

        while not started:
            await asyncio.sleep(0.005)
        scheduler.stop()
        await asyncio.sleep(0.3)

        assert finished == []
        assert len(cache) == 0
        assert surface.replaced == {}
        assert loader._inflight == {}
