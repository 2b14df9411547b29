"""
Tests for the user preferences file.
"""

import json

from config_manager import ConfigManager


class TestConfigManager:
    """Test loading, merging and saving preferences"""

    def test_creates_default_file(self, tmp_path):
        path = tmp_path / "prefs.json"
        manager = ConfigManager(str(path))

        assert path.exists()
        assert json.loads(path.read_text(encoding="utf-8")) == ConfigManager.DEFAULT_CONFIG
        assert manager.get("defaults", "dotType") == "circle"

    def test_merges_over_defaults(self, tmp_path):
        """Test saved values win while missing keys keep their defaults"""
        path = tmp_path / "prefs.json"
        path.write_text(json.dumps({"defaults": {"dotType": "square", "spacing": 12}}),
                        encoding="utf-8")

        manager = ConfigManager(str(path))

        assert manager.get("defaults", "dotType") == "square"
        assert manager.get("defaults", "spacing") == 12
        assert manager.get("defaults", "effectType") == "scale"
        assert manager.get("paths", "last_save_dir") is None

    def test_defaults_are_not_shared(self, tmp_path):
        manager = ConfigManager(str(tmp_path / "a.json"))
        manager.set("defaults", "dotType", value="triangle")

        assert ConfigManager.DEFAULT_CONFIG["defaults"]["dotType"] == "circle"
        assert ConfigManager(str(tmp_path / "b.json")).get("defaults", "dotType") == "circle"

    def test_invalid_json_falls_back(self, tmp_path):
        path = tmp_path / "prefs.json"
        path.write_text("{not json", encoding="utf-8")
        assert ConfigManager(str(path)).get("defaults", "colorMode") == "solid"

    def test_get_missing_key(self, tmp_path):
        manager = ConfigManager(str(tmp_path / "prefs.json"))
        assert manager.get("nope", "deeper", default=3) == 3

    def test_set_and_save(self, tmp_path):
        path = tmp_path / "prefs.json"
        manager = ConfigManager(str(path))
        manager.set("defaults", "color", value="#123456")
        manager.save()

        assert ConfigManager(str(path)).get("defaults", "color") == "#123456"

    def test_halftone_defaults_copy(self, tmp_path):
        manager = ConfigManager(str(tmp_path / "prefs.json"))
        defaults = manager.get_halftone_defaults()
        defaults["dotType"] = "square"
        assert manager.get("defaults", "dotType") == "circle"

    def test_last_paths(self, tmp_path):
        manager = ConfigManager(str(tmp_path / "prefs.json"))
        manager.update_last_path("image", str(tmp_path / "in" / "cat.png"))
        assert manager.get_last_path("image") == str(tmp_path / "in")

    def test_recent_files(self, tmp_path):
        """Test recent files are deduplicated, newest first and capped"""
        manager = ConfigManager(str(tmp_path / "prefs.json"))
        files = []
        for i in range(4):
            path = tmp_path / f"img{i}.png"
            path.write_bytes(b"x")
            files.append(str(path))
            manager.add_recent_file(str(path), max_recent=3)
        manager.add_recent_file(files[2], max_recent=3)

        assert manager.get("recent_files") == [files[2], files[3], files[1]]

        (tmp_path / "img3.png").unlink()
        assert manager.get_recent_files() == [files[2], files[1]]

        manager.clear_recent_files()
        assert manager.get_recent_files() == []
