import asyncio
from pathlib import Path

import pytest

from bridge.client import BridgeTimeoutError
from domain.models import Clip, PluginNode, Project, Track
from sync.reconcile import (
    ClipSyncSummary,
    ReconciliationEngine,
    ReconciliationError,
    ResyncScope,
    ordered_plugin_nodes,
    parse_parameter_schema,
    required_track_count,
)


def _no_silence(path, *, peaks, duration_seconds):
    return 0.0


def _audio_project(tmp_path: Path, *names: str) -> Project:
    clips = []
    for index, name in enumerate(names):
        path = tmp_path / name
        if not name.startswith("missing"):
            path.write_bytes(b"RIFF")
        clips.append(
            Clip(
                id=f"audio-{index}",
                type="audio",
                start=float(index),
                length=1.0,
                source_name=name,
                source_path=str(path),
                fade_in=0.1,
            )
        )
    return Project(bpm=120.0, tracks=[Track(track_id=1, clips=clips)])


@pytest.mark.asyncio
async def test_full_resync_runs_steps_in_order(fake_peer, example_project):
    engine = ReconciliationEngine(fake_peer, silence_estimator=_no_silence)

    report = await engine.resync(example_project, ResyncScope.FULL)

    commands = fake_peer.commands()
    assert commands[:2] == ["transport.get_state", "edit:reset"]
    assert fake_peer.payloads("edit:reset") == [{"track_count": 16}]
    loads = fake_peer.payloads("vst:load")
    assert [(load["plugin_uid"], load["track_id"]) for load in loads] == [
        ("vst3:synth", 2),
        ("vst3:keys", 3),
    ]
    assert commands.index("edit:clear-audio-clips") > commands.index("vst:param:set")
    assert commands.count("track:set-volume") == 3
    assert commands[-1] == "transport:ensure-context"
    assert report.plugins.restored == 2
    assert report.plugins.failed == 0
    assert report.mixer_failures == 0
    assert report.transport_restored is False
    assert [resolution.node_id for resolution in report.plugins.resolutions] == [
        "node-bass",
        "node-keys",
    ]
    assert report.plugins.resolutions[0].params == {"cutoff": 0.5}


@pytest.mark.asyncio
async def test_cached_params_override_schema_defaults(fake_peer):
    project = Project(
        tracks=[Track(track_id=1)],
        nodes=[
            PluginNode(
                id="n1",
                plugin_uid="vst3:synth",
                track_id=1,
                bypassed=True,
                params={"cutoff": 0.9, "extra": 0.1},
            )
        ],
    )
    engine = ReconciliationEngine(fake_peer, silence_estimator=_no_silence)

    report = await engine.resync(project, ResyncScope.FULL)

    sent = {payload["param_id"]: payload["value"] for payload in fake_peer.payloads("vst:param:set")}
    assert sent == {"cutoff": 0.9, "extra": 0.1}
    assert fake_peer.payloads("vst:bypass:set") == [
        {"track_id": 1, "plugin_index": 0, "bypassed": True}
    ]
    resolution = report.plugins.resolutions[0]
    assert resolution.plugin_uid == "vst3:synth"
    assert [entry.id for entry in resolution.parameter_schema] == ["cutoff"]


@pytest.mark.asyncio
async def test_edit_reset_failure_is_fatal(fake_peer, example_project):
    fake_peer.fail("edit:reset", "engine busy")
    engine = ReconciliationEngine(fake_peer, silence_estimator=_no_silence)

    with pytest.raises(ReconciliationError):
        await engine.resync(example_project, ResyncScope.FULL)

    assert "vst:load" not in fake_peer.commands()
    assert engine.busy is False


@pytest.mark.asyncio
async def test_arrangement_scope_skips_reset_and_plugins(fake_peer, example_project):
    engine = ReconciliationEngine(fake_peer, silence_estimator=_no_silence)

    report = await engine.resync(example_project, ResyncScope.ARRANGEMENT)

    assert "edit:reset" not in fake_peer.commands()
    assert "vst:load" not in fake_peer.commands()
    assert "edit:clear-audio-clips" in fake_peer.commands()
    assert report.plugins is None


@pytest.mark.asyncio
async def test_missing_plugin_by_name_falls_back_to_default_instrument(fake_peer):
    fake_peer.missing_plugins.add("Mystery Synth")
    project = Project(
        tracks=[Track(track_id=1)],
        nodes=[PluginNode(id="legacy", plugin="Mystery Synth", track_id=1)],
    )
    engine = ReconciliationEngine(fake_peer, silence_estimator=_no_silence)

    report = await engine.resync(project, ResyncScope.FULL)

    loads = [payload["plugin_uid"] for payload in fake_peer.payloads("vst:load")]
    assert loads == ["Mystery Synth", "internal:ultrasound"]
    resolution = report.plugins.resolutions[0]
    assert resolution.plugin_uid == "internal:ultrasound"
    assert report.plugins.failed == 0


@pytest.mark.asyncio
async def test_missing_plugin_with_uid_is_counted(fake_peer, example_project):
    fake_peer.missing_plugins.add("vst3:keys")
    engine = ReconciliationEngine(fake_peer, silence_estimator=_no_silence)

    report = await engine.resync(example_project, ResyncScope.FULL)

    assert report.plugins.restored == 1
    assert report.plugins.failed == 1
    assert "node-keys" in report.plugins.errors[0]
    assert "internal:ultrasound" not in [p["plugin_uid"] for p in fake_peer.payloads("vst:load")]


@pytest.mark.asyncio
async def test_clip_sync_places_files_and_reports_failures(fake_peer, tmp_path):
    project = _audio_project(tmp_path, "kick.wav", "missing.wav")
    calls = []

    def estimator(path, *, peaks, duration_seconds):
        calls.append((Path(path).name, duration_seconds))
        return 0.123456

    engine = ReconciliationEngine(fake_peer, silence_estimator=estimator)

    report = await engine.resync(project, ResyncScope.ARRANGEMENT)

    summary = report.clips
    assert (summary.total, summary.synced, summary.failed) == (2, 1, 1)
    assert summary.last_errors == ["missing.wav: source file not found"]
    assert engine.last_clip_sync is summary
    placed = fake_peer.payloads("clip:import-file")[0]
    assert placed["track_id"] == 1
    assert placed["source_path"] == str((tmp_path / "kick.wav").resolve())
    assert placed["start_seconds"] == 0.0
    assert placed["length_seconds"] == pytest.approx(2.0)
    assert placed["fade_in"] == pytest.approx(0.1)
    assert placed["source_offset_seconds"] == pytest.approx(0.1235)
    assert calls == [("kick.wav", 2.0)]


@pytest.mark.asyncio
async def test_clip_import_rejection_is_recorded(fake_peer, tmp_path):
    project = _audio_project(tmp_path, "a.wav")
    fake_peer.fail("clip:import-file", "unsupported codec")
    engine = ReconciliationEngine(fake_peer, silence_estimator=_no_silence)

    report = await engine.resync(project, ResyncScope.ARRANGEMENT)

    assert report.clips.failed == 1
    assert report.clips.last_errors == ["a.wav: unsupported codec"]
    assert "source_offset_seconds" not in fake_peer.payloads("clip:import-file")[0]


def test_clip_summary_keeps_last_ten_errors():
    summary = ClipSyncSummary()
    for index in range(15):
        summary.record_failure(f"error {index}")

    assert summary.failed == 15
    assert summary.last_errors == [f"error {index}" for index in range(5, 15)]
    assert summary.to_payload()["failed"] == 15


@pytest.mark.asyncio
async def test_unreadable_clips_beyond_ten_keep_latest_errors(fake_peer, tmp_path):
    missing = [f"missing-{index}.wav" for index in range(12)]
    project = _audio_project(tmp_path, *missing, "a.wav", "b.wav", "c.wav")
    engine = ReconciliationEngine(fake_peer, silence_estimator=_no_silence)

    report = await engine.resync(project, ResyncScope.ARRANGEMENT)

    summary = report.clips
    assert (summary.total, summary.synced, summary.failed) == (15, 3, 12)
    assert summary.last_errors == [
        f"missing-{index}.wav: source file not found" for index in range(2, 12)
    ]
    assert len(fake_peer.payloads("clip:import-file")) == 3


@pytest.mark.asyncio
async def test_clear_failure_reported_apart_from_clip_errors(fake_peer, tmp_path):
    project = _audio_project(tmp_path, "a.wav")
    fake_peer.fail("edit:clear-audio-clips", "busy")
    engine = ReconciliationEngine(fake_peer, silence_estimator=_no_silence)

    report = await engine.resync(project, ResyncScope.ARRANGEMENT)

    assert (report.clips.total, report.clips.synced, report.clips.failed) == (1, 1, 0)
    assert report.clips.last_errors == []
    assert report.clear_error == "busy"
    assert report.to_payload()["clear_error"] == "busy"


@pytest.mark.asyncio
async def test_timeouts_are_folded_into_summaries(fake_peer, example_project, tmp_path):
    fake_peer.fail_with("vst:load", BridgeTimeoutError("vst:load timed out"))
    fake_peer.fail_with("clip:import-file", BridgeTimeoutError("clip:import-file timed out"))
    engine = ReconciliationEngine(fake_peer, silence_estimator=_no_silence)

    full = await engine.resync(example_project, ResyncScope.FULL)

    assert (full.plugins.restored, full.plugins.failed) == (0, 2)
    assert all("timed out" in error for error in full.plugins.errors)
    assert full.plugins.resolutions == []

    arrangement = await engine.resync(_audio_project(tmp_path, "a.wav"), ResyncScope.ARRANGEMENT)

    assert (arrangement.clips.synced, arrangement.clips.failed) == (0, 1)
    assert arrangement.clips.last_errors == ["a.wav: clip:import-file timed out"]
    assert engine.busy is False


@pytest.mark.asyncio
async def test_concurrent_passes_do_not_interleave(fake_peer, example_project):
    gate = fake_peer.hold("vst:load")
    engine = ReconciliationEngine(fake_peer, silence_estimator=_no_silence)

    first = asyncio.create_task(engine.resync(example_project, ResyncScope.FULL))
    second = asyncio.create_task(engine.resync(example_project, ResyncScope.FULL))
    for _ in range(5):
        await asyncio.sleep(0)

    assert engine.busy is True
    assert fake_peer.commands().count("transport.get_state") == 1

    gate.set()
    await asyncio.gather(first, second)

    commands = fake_peer.commands()
    half = len(commands) // 2
    assert commands.count("edit:reset") == 2
    assert commands[half] == "transport.get_state"
    assert commands[:half] == commands[half:]


@pytest.mark.asyncio
async def test_mixer_failures_are_counted(fake_peer, example_project):
    fake_peer.fail("track:set-pan")
    engine = ReconciliationEngine(fake_peer, silence_estimator=_no_silence)

    report = await engine.resync(example_project, ResyncScope.ARRANGEMENT)

    assert report.mixer_failures == 3
    assert fake_peer.payloads("track:set-mute")[1] == {"track_id": 2, "mute": True}


@pytest.mark.asyncio
async def test_transport_restored_after_resync(fake_peer, example_project):
    fake_peer.position_beats = 8.0
    fake_peer.playing = True
    engine = ReconciliationEngine(fake_peer, silence_estimator=_no_silence)

    report = await engine.resync(example_project, ResyncScope.FULL)

    tail = fake_peer.commands()[-4:]
    assert tail == ["transport:ensure-context", "transport.seek", "transport.play", "transport.set_bpm"]
    assert fake_peer.payloads("transport.seek") == [{"position_beats": 8.0}]
    assert fake_peer.payloads("transport.set_bpm") == [{"bpm": 120.0}]
    assert report.transport_restored is True


def test_required_track_count_and_ordering():
    project = Project(
        tracks=[Track(track_id=index) for index in range(1, 4)],
        nodes=[
            PluginNode(id="late", plugin="B", track_id=2, plugin_index=1),
            PluginNode(id="early", plugin="A", track_id=2, plugin_index=0),
            PluginNode(id="first", plugin="C", track_id=1),
            PluginNode(id="far", plugin="D", track_id=20),
        ],
    )

    assert required_track_count(project) == 20
    assert [node.id for node in ordered_plugin_nodes(project)] == ["first", "early", "late", "far"]


def test_parse_parameter_schema_normalizes_entries():
    schema = parse_parameter_schema(
        [
            {"id": "gain", "min": 2.0, "max": -2.0, "value": 5.0},
            {"param_id": 7, "default": 0.25},
            {"name": "no id"},
            "garbage",
        ]
    )

    assert [(entry.id, entry.min, entry.max, entry.value) for entry in schema] == [
        ("gain", -2.0, 2.0, 2.0),
        ("7", 0.0, 1.0, 0.25),
    ]
    assert parse_parameter_schema(None) == []
