"""Tests for the storage facade and its local backend."""

import pytest

from hlsingest.core.storage import Storage, StorageConfig, StorageService


@pytest.fixture
def rooted_storage(tmp_path) -> Storage:
    return Storage(StorageConfig(backend="local", root="vod/", local_path=str(tmp_path / "objects")))


class TestLocalStorage:

    def test_keys_are_relative_to_root(self, tmp_path, rooted_storage) -> None:
        result = rooted_storage.upload_bytes(b"#EXTM3U\n", "assets/A1/master.m3u8")

        assert result.success
        assert result.key == "assets/A1/master.m3u8"
        assert (tmp_path / "objects" / "vod" / "assets" / "A1" / "master.m3u8").read_bytes() == b"#EXTM3U\n"
        assert rooted_storage.list_files("assets/A1/") == ["assets/A1/master.m3u8"]
        assert rooted_storage.exists("assets/A1/master.m3u8")

    def test_upload_file(self, tmp_path, storage) -> None:
        source = tmp_path / "segment_000.ts"
        source.write_bytes(b"ts-data")

        result = storage.upload(str(source), "assets/A1/360p/segment_000.ts", "video/MP2T")

        assert result.success and result.file_size == 7

    def test_move_replaces_destination(self, storage) -> None:
        storage.upload_bytes(b"old", "assets/A1/master.m3u8")
        storage.upload_bytes(b"new", "assets/A1/.tmp")

        assert storage.move("assets/A1/.tmp", "assets/A1/master.m3u8").success
        assert storage.list_files("assets/A1/") == ["assets/A1/master.m3u8"]

    def test_move_of_missing_key_fails(self, storage) -> None:
        assert not storage.move("assets/A1/missing", "assets/A1/master.m3u8").success

    def test_delete_prefix_does_not_touch_siblings(self, storage) -> None:
        storage.upload_bytes(b"a", "assets/A1/360p/playlist.m3u8")
        storage.upload_bytes(b"b", "assets/A1/master.m3u8")
        storage.upload_bytes(b"c", "assets/A10/master.m3u8")

        assert storage.delete_prefix("assets/A1/") == 2
        assert storage.list_files("assets/A1/") == []
        assert storage.list_files("assets/A10/") == ["assets/A10/master.m3u8"]

    def test_local_url_is_file_uri(self, storage) -> None:
        assert storage.get_url("assets/A1/master.m3u8").startswith("file://")

    def test_cdn_url(self, tmp_path) -> None:
        storage = Storage(
            StorageConfig(
                backend="local",
                local_path=str(tmp_path),
                cdn_domain="cdn.example.com",
                cdn_enabled=True,
            )
        )

        assert storage.get_url("assets/A1/master.m3u8") == "https://cdn.example.com/assets/A1/master.m3u8"

    def test_ping(self, storage) -> None:
        assert storage.ping()

    def test_unknown_backend(self, tmp_path) -> None:
        with pytest.raises(ValueError):
            Storage(StorageConfig(backend="ftp", local_path=str(tmp_path)))


class TestStorageService:

    async def test_async_wrappers(self, storage) -> None:
        service = StorageService(storage, timeout=5.0)

        result = await service.upload_bytes(b"x", "assets/A1/thumb.jpg", "image/jpeg")

        assert result.success
        assert await service.exists("assets/A1/thumb.jpg")
        assert await service.list_files("assets/A1/") == ["assets/A1/thumb.jpg"]
        assert await service.delete("assets/A1/thumb.jpg")
        assert await service.ping()
