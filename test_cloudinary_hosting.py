import cloudinary
import cloudinary.api
import cloudinary.exceptions
import cloudinary.uploader
import pytest

import cloudinary_hosting
import config_store
import upload_static_images

SETTINGS = {"cloud_name": "demo", "api_key": "123", "api_secret": "secret", "folder": "newzlettr"}


def _touch(path):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\x89PNG")


@pytest.fixture
def public_dir(tmp_path):
    root = tmp_path / "public"
    _touch(root / "logo.png")
    _touch(root / "platforms" / "android.PNG")
    _touch(root / "platforms" / "readme.txt")
    _touch(root / "posters" / "deep" / "a.webp")
    return root


@pytest.fixture
def fake_upload(monkeypatch):
    calls = []

    def upload(file_path, **options):
        calls.append((file_path, options))
        name = file_path.replace("\\", "/").rsplit("/", 1)[-1]
        return {"secure_url": f"https://res.cloudinary.com/demo/{options['folder']}/{name}"}

    monkeypatch.setattr(cloudinary.uploader, "upload", upload)
    return calls


class TestSettings:
    def test_env_wins_over_config(self):
        cfg = {"cloudinary": {"cloudName": "cfg", "apiKey": "k", "apiSecret": config_store.encrypt("s")}}
        settings = cloudinary_hosting.cloudinary_settings(cfg, {"CLOUDINARY_CLOUD_NAME": "env"})
        assert settings == {"cloud_name": "env", "api_key": "k", "api_secret": "s", "folder": "newzlettr"}

    def test_snake_case_block(self):
        cfg = {"cloudinary": {"cloud_name": "c", "api_key": "k", "api_secret": "plain", "path": "p"}}
        settings = cloudinary_hosting.cloudinary_settings(cfg, {})
        assert settings == {"cloud_name": "c", "api_key": "k", "api_secret": "plain", "folder": "p"}

    def test_configure_names_missing_fields(self):
        with pytest.raises(cloudinary_hosting.CloudinaryConfigError, match="api_key, api_secret"):
            cloudinary_hosting.configure({"cloud_name": "demo"})

    def test_check_connection_pings(self, monkeypatch):
        monkeypatch.setattr(cloudinary.api, "ping", lambda: {"status": "ok"})
        assert cloudinary_hosting.check_connection(SETTINGS) == {"status": "ok"}
        assert cloudinary.config().cloud_name == "demo"


def test_clear_folder_repeats_partial_deletes(monkeypatch):
    results = [
        {"deleted": {"newzlettr/a": "deleted", "newzlettr/b": "deleted"}, "partial": True},
        {"deleted": {"newzlettr/c": "deleted"}, "partial": False},
    ]
    prefixes = []

    def delete(prefix, **options):
        prefixes.append(prefix)
        return results.pop(0)

    monkeypatch.setattr(cloudinary.api, "delete_resources_by_prefix", delete)
    assert cloudinary_hosting.clear_folder(SETTINGS, " /newzlettr/ ") == 3
    assert prefixes == ["newzlettr/", "newzlettr/"]


class TestUpload:
    def test_uploads_images_and_keeps_structure(self, public_dir, tmp_path, fake_upload):
        map_file = tmp_path / "map.json"
        uploaded = cloudinary_hosting.upload_static_images(str(public_dir), str(map_file))

        assert [rel for rel, _ in uploaded] == ["logo.png", "platforms/android.PNG", "posters/deep/a.webp"]
        folders = [options["folder"] for _, options in fake_upload]
        assert folders == ["newzlettr", "newzlettr/platforms", "newzlettr/posters/deep"]
        options = fake_upload[0][1]
        assert options["use_filename"] is True
        assert options["unique_filename"] is False
        assert options["overwrite"] is False
        assert options["resource_type"] == "image"

        url_map = cloudinary_hosting.load_url_map(str(map_file))
        assert url_map["platforms/android.PNG"] == "https://res.cloudinary.com/demo/newzlettr/platforms/android.PNG"

    def test_second_run_uploads_nothing(self, public_dir, tmp_path, fake_upload):
        map_file = tmp_path / "map.json"
        cloudinary_hosting.upload_static_images(str(public_dir), str(map_file))
        assert cloudinary_hosting.upload_static_images(str(public_dir), str(map_file)) == []
        assert len(fake_upload) == 3

    def test_failed_upload_is_skipped(self, public_dir, tmp_path, monkeypatch, caplog):
        def upload(file_path, **options):
            if file_path.endswith("logo.png"):
                raise cloudinary.exceptions.Error("quota exceeded")
            return {"secure_url": "https://res.cloudinary.com/x"}

        monkeypatch.setattr(cloudinary.uploader, "upload", upload)
        map_file = tmp_path / "map.json"
        uploaded = cloudinary_hosting.upload_static_images(str(public_dir), str(map_file))

        assert len(uploaded) == 2
        assert "logo.png" not in cloudinary_hosting.load_url_map(str(map_file))
        assert "quota exceeded" in caplog.text


def test_hosted_url_reads_reloaded_map():
    cloudinary_hosting.save_url_map({"logo.png": "https://res.cloudinary.com/logo.png"})
    cloudinary_hosting.reload_url_map()
    assert cloudinary_hosting.hosted_url("logo.png") == "https://res.cloudinary.com/logo.png"
    assert cloudinary_hosting.hosted_url("missing.png") is None


class TestScript:
    def test_missing_env_exits_1(self, monkeypatch, caplog):
        monkeypatch.setattr(upload_static_images, "load_dotenv", lambda *a, **k: False)
        assert upload_static_images.main([]) == 1
        assert "CLOUDINARY_CLOUD_NAME" in caplog.text

    def test_runs_upload(self, monkeypatch, public_dir, tmp_path, fake_upload):
        monkeypatch.setattr(upload_static_images, "load_dotenv", lambda *a, **k: False)
        monkeypatch.setenv("CLOUDINARY_CLOUD_NAME", "demo")
        monkeypatch.setenv("CLOUDINARY_API_KEY", "123")
        monkeypatch.setenv("CLOUDINARY_API_SECRET", "secret")
        map_file = tmp_path / "urls.json"

        code = upload_static_images.main(["--public-dir", str(public_dir), "--map", str(map_file), "--folder", "nl"])

        assert code == 0
        assert len(cloudinary_hosting.load_url_map(str(map_file))) == 3
        assert fake_upload[0][1]["folder"] == "nl"

    def test_missing_public_dir_exits_1(self, monkeypatch, tmp_path, fake_upload, caplog):
        monkeypatch.setattr(upload_static_images, "load_dotenv", lambda *a, **k: False)
        monkeypatch.setenv("CLOUDINARY_CLOUD_NAME", "demo")
        monkeypatch.setenv("CLOUDINARY_API_KEY", "123")
        monkeypatch.setenv("CLOUDINARY_API_SECRET", "secret")
        map_file = tmp_path / "urls.json"

        code = upload_static_images.main(["--public-dir", str(tmp_path / "nope"), "--map", str(map_file)])

        assert code == 1
        assert "Public directory not found" in caplog.text
        assert not map_file.exists()
        assert fake_upload == []
