"""End-to-end profile sync between a controller node and a player node."""

import pytest

from conftest import FakeClientConnection, FakeServerFactory, FakeSession, settle
from p2p.models import P2PMode
from p2p.node import PeerNode
from storage.blob import FileBlobStore
from sync.models import M3UData, UserData
from sync.profiles import ProfileRepository, m3u_source_key
from sync.service import ProfileSynchronizer

SOURCE = (
    '#EXTM3U\r\n'
    '#EXTINF:-1 tvg-id="nt" group-title="Nouvelles",Télé Info\r\n'
    'http://prov.example/live/1.ts\n'
    '#EXTINF:-1,Café 😀\n'
    'http://prov.example/live/2.ts'
)
MOVIE = "http://prov.example/movie/42.mkv"


class Pair:
    """A controller and a player whose sockets are wired back to back in memory."""

    def __init__(self, tmp_path):
        self.controller_store = FileBlobStore(tmp_path / "controller" / "data")
        self.player_store = FileBlobStore(tmp_path / "player" / "data")
        self.controller = PeerNode(
            tmp_path / "controller",
            blob_store=self.controller_store,
            server_factory=FakeServerFactory(),
        )
        self.player = PeerNode(
            tmp_path / "player",
            blob_store=self.player_store,
            connector=self._connect,
        )
        self.player_socket: FakeClientConnection | None = None
        self.controller_events: list[str] = []
        self.player_events: list[str] = []

        async def on_controller_event(event, data):
            self.controller_events.append(event)

        async def on_player_event(event, data):
            self.player_events.append(event)

        self.controller.on_event(on_controller_event)
        self.player.on_event(on_player_event)

    async def _connect(self, uri, timeout):
        socket = FakeClientConnection()
        session = FakeSession(on_send=socket.feed)
        connection = await self.controller.manager.accept_session(session, "192.168.1.40", 51000)
        socket.on_send = lambda text: self.controller.manager.handle_inbound(connection.connection_id, text)
        self.player_socket = socket
        return socket

    async def connect_and_pair(self) -> None:
        await self.controller.manager.set_mode(P2PMode.SERVER)
        assert await self.player.manager.connect_to_server("192.168.1.10", 8080)
        await settle(lambda: self.controller.pairing.pending is not None)
        assert await self.controller.pairing.accept(remember=True)


async def seed_controller(pair: Pair) -> str:
    repository = pair.controller.repository
    profile = await repository.create_profile("alice", "http://prov.example/get.m3u", source=SOURCE)
    await repository.select("alice", profile.uuid)
    await repository.write_user_data("alice", UserData.model_validate({
        "watchables": {MOVIE: {"favorite": {"value": True, "updatedAt": 1000}}},
        "stickyGroups": ["Nouvelles"],
    }))
    return profile.uuid


class TestFullSyncBootstrap:
    @pytest.mark.asyncio
    async def test_player_without_cache_receives_byte_identical_playlist(self, tmp_path):
        pair = Pair(tmp_path)
        uuid = await seed_controller(pair)

        await pair.connect_and_pair()
        await settle(lambda: "user_data_changed" in pair.controller_events)

        key = m3u_source_key(uuid)
        assert await pair.player_store.read(key) == await pair.controller_store.read(key)
        assert await pair.player_store.read(key) == SOURCE.encode("utf-8")

        current = await pair.player.repository.current()
        assert current.username == "alice"
        assert current.uuid == uuid
        assert current.source_url == "http://prov.example/get.m3u"

        player_data = await pair.player.repository.read_user_data("alice")
        assert player_data.watchables[MOVIE].favorite.value is True
        assert player_data.sticky_groups == ["Nouvelles"]
        assert "content_changed" in pair.player_events

    @pytest.mark.asyncio
    async def test_player_with_cache_skips_full_sync(self, tmp_path):
        pair = Pair(tmp_path)
        uuid = await seed_controller(pair)
        await pair.player.repository.write_m3u(uuid, M3UData(source="#EXTM3U\ncached"))

        await pair.connect_and_pair()
        await settle(lambda: "content_changed" in pair.player_events)

        assert [m["type"] for m in pair.player_socket.messages()] == ["pair_request"]
        assert await pair.player_store.read(m3u_source_key(uuid)) == b"#EXTM3U\ncached"
        assert not pair.player.synchronizer.full_sync_in_progress

    @pytest.mark.asyncio
    async def test_player_edits_flow_back_to_controller(self, tmp_path):
        pair = Pair(tmp_path)
        await seed_controller(pair)
        await pair.player.repository.create_profile("alice", "http://prov.example/get.m3u")
        await pair.player.repository.select("alice")
        await pair.player.repository.write_user_data("alice", UserData.model_validate({
            "watchables": {MOVIE: {"favorite": {"value": False, "updatedAt": 2000}}},
            "hiddenGroups": ["Shopping"],
        }))

        await pair.connect_and_pair()
        await settle(lambda: "user_data_changed" in pair.controller_events)

        controller_data = await pair.controller.repository.read_user_data("alice")
        assert controller_data.watchables[MOVIE].favorite.value is False
        assert controller_data.hidden_groups == ["Shopping"]
        assert controller_data.sticky_groups == ["Nouvelles"]


class StubManager:
    mode = P2PMode.CLIENT

    def __init__(self, deliver: bool = True):
        self.deliver = deliver
        self.requests = []

    async def send_to_server(self, message) -> bool:
        self.requests.append(message)
        return self.deliver


class TestFullSyncRetry:
    @pytest.mark.asyncio
    async def test_gives_up_after_bounded_retries(self, tmp_path):
        manager = StubManager()
        synchronizer = ProfileSynchronizer(
            manager, ProfileRepository(FileBlobStore(tmp_path)), timeout=0.05, retries=2, retry_delay=0
        )
        failures = []

        async def on_event(event, data):
            if event == "sync_failed":
                failures.append(data)

        synchronizer.on_event(on_event)

        assert not await synchronizer.request_full_sync()
        assert len(manager.requests) == 3
        assert manager.requests[0].payload == {"request": "full"}
        assert failures == [{"attempts": 3}]

    @pytest.mark.asyncio
    async def test_only_one_background_full_sync(self, tmp_path):
        synchronizer = ProfileSynchronizer(
            StubManager(deliver=False), ProfileRepository(FileBlobStore(tmp_path)),
            timeout=0.05, retries=1, retry_delay=0.5,
        )
        assert synchronizer.start_full_sync()
        assert not synchronizer.start_full_sync()
        synchronizer.reset()
        assert not synchronizer.full_sync_in_progress

    @pytest.mark.asyncio
    async def test_nothing_to_merge_without_active_profile(self, tmp_path):
        synchronizer = ProfileSynchronizer(StubManager(), ProfileRepository(FileBlobStore(tmp_path)))
        assert await synchronizer.merge_remote(UserData()) is None
        assert not await synchronizer.send_full_sync("c1")
