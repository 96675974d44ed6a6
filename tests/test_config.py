from nullpass.config import Settings


class TestJwtSecret:
    def test_generated_when_unset_and_reused(self, tmp_path, monkeypatch):
        fs_root = tmp_path / "shared"
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("JWT_SECRET", raising=False)
        monkeypatch.setenv("SHARED_FS_ROOT", str(fs_root))

        first = Settings.from_env()
        assert first.jwt_secret and len(first.jwt_secret) >= 32
        persisted = fs_root / ".jwt_secret"
        assert persisted.read_text().strip() == first.jwt_secret

        second = Settings.from_env()
        assert second.jwt_secret == first.jwt_secret

    def test_explicit_secret_wins(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
        monkeypatch.setenv("JWT_SECRET", "explicit-secret")
        assert Settings.from_env().jwt_secret == "explicit-secret"
        assert not (tmp_path / "shared" / ".jwt_secret").exists()
