import json

from settings import ColumnMappingConfig, SyncSettings, load_sync_settings, save_sync_settings


def test_first_load_writes_defaults(tmp_path):
    path = tmp_path / "config" / "runsync_settings.json"

    settings = load_sync_settings(str(path))

    assert path.exists()
    assert settings.tick_interval_ms == 1000
    assert settings.utc_offset_minutes == 540
    assert json.loads(path.read_text(encoding="utf-8"))["value_input_option"] == "USER_ENTERED"


def test_values_are_clamped_on_load(tmp_path):
    path = tmp_path / "runsync_settings.json"
    path.write_text(
        json.dumps(
            {
                "tick_interval_ms": 5,
                "update_debounce_seconds": 120,
                "utc_offset_minutes": "nope",
                "value_input_option": "raw",
                "default_required_columns": ["title", "", 3],
            }
        ),
        encoding="utf-8",
    )

    settings = load_sync_settings(str(path))

    assert settings.tick_interval_ms == 100
    assert settings.update_debounce_seconds == 30.0
    assert settings.utc_offset_minutes == 540
    assert settings.value_input_option == "RAW"
    assert settings.default_required_columns == ["title"]


def test_unknown_value_input_option_falls_back(tmp_path):
    path = tmp_path / "runsync_settings.json"
    path.write_text(json.dumps({"value_input_option": "FORMULA"}), encoding="utf-8")

    assert load_sync_settings(str(path)).value_input_option == "USER_ENTERED"


def test_invalid_json_uses_defaults(tmp_path, caplog):
    path = tmp_path / "runsync_settings.json"
    path.write_text("{not json", encoding="utf-8")

    settings = load_sync_settings(str(path))

    assert settings.update_debounce_seconds == 1.0
    assert "not valid JSON" in caplog.text


def test_save_and_reload(tmp_path):
    path = str(tmp_path / "runsync_settings.json")
    save_sync_settings(SyncSettings(tick_interval_ms=250, utc_offset_minutes=-300), path)

    reloaded = load_sync_settings(path)

    assert reloaded.tick_interval_ms == 250
    assert reloaded.utc_offset_minutes == -300


def test_client_secret_is_not_written(tmp_path):
    path = tmp_path / "runsync_settings.json"
    save_sync_settings(SyncSettings(google_client_id="cid", google_client_secret="secret"), str(path))

    assert "secret" not in path.read_text(encoding="utf-8")


def test_column_mapping_config_from_dict():
    assert ColumnMappingConfig.from_dict(None) is None
    assert ColumnMappingConfig.from_dict({"mappings": ["A"]}) is None

    config = ColumnMappingConfig.from_dict({"mappings": {"id": " A ", "title": "", "notes": None}})

    assert config.mappings == {"id": "A"}
    assert config.missing_required() == ["title", "started_at", "ended_at", "duration_seconds"]
    assert config.to_json()["mappings"] == {"id": "A"}
