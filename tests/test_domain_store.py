import itertools
import random

import pytest

from domain.models import DrumStep, MidiNote, Pattern, PluginParameter, Project, Track
from domain.store import (
    EntityNotFoundError,
    PluginResolution,
    ProjectEditError,
    ProjectStore,
    resolve_source_format,
    snap_to_grid,
)


def _make_store(project: Project | None = None) -> ProjectStore:
    counter = itertools.count(1)
    return ProjectStore(project, id_factory=lambda prefix: f"{prefix}-{next(counter)}")


def _assert_layout_consistent(project: Project) -> None:
    ids = [track.track_id for track in project.tracks]
    assert ids == list(range(1, len(ids) + 1))
    assert [entry.track_id for entry in project.mixer] == ids
    for node in project.nodes:
        assert node.track_id in ids
    for track_id in ids:
        chain = project.plugin_nodes_for_track(track_id)
        assert [node.plugin_index for node in chain] == list(range(len(chain)))


def test_create_track_appends_with_defaults():
    store = _make_store()

    first = store.create_track()
    second = store.create_track("  Lead  ")

    assert first.track_id == 1 and first.name == "Track 1"
    assert second.track_id == 2 and second.name == "Lead"
    assert store.project.mixer_entry(2).volume == pytest.approx(0.85)
    assert store.revision == 2


def test_insert_track_shifts_mixer_and_nodes(example_project):
    store = _make_store(example_project)

    inserted = store.insert_track(2, "New")

    project = store.project
    assert inserted.track_id == 2
    assert [track.name for track in project.tracks] == ["Drums", "New", "Bass", "Keys"]
    assert project.mixer_entry(3).mute is True
    assert project.mixer_entry(2).volume == pytest.approx(0.85)
    assert project.node("node-bass").track_id == 3
    assert project.node("node-keys").track_id == 4
    _assert_layout_consistent(project)


def test_delete_tracks_renumbers_and_drops_nodes(example_project):
    store = _make_store(example_project)

    deleted = store.delete_tracks([2])

    project = store.project
    assert deleted == [2]
    assert [track.name for track in project.tracks] == ["Drums", "Keys"]
    assert project.node("node-bass") is None
    assert project.node("node-keys").track_id == 2
    assert project.mixer_entry(2).volume == pytest.approx(0.9)
    _assert_layout_consistent(project)


def test_deleting_every_track_leaves_default_track(example_project):
    store = _make_store(example_project)

    store.delete_tracks([1, 2, 3])

    assert [(track.track_id, track.name) for track in store.project.tracks] == [(1, "Track 1")]
    assert store.project.nodes == []


def test_delete_unknown_track_is_atomic(example_project):
    store = _make_store(example_project)
    before = store.snapshot()

    with pytest.raises(EntityNotFoundError):
        store.delete_tracks([1, 9])

    assert store.project == before
    assert store.revision == 0


def test_duplicate_track_copies_clips_and_chain(example_project):
    store = _make_store(example_project)
    store.rename_track(2, "A very long bass name xx")

    copy = store.duplicate_track(2)

    project = store.project
    assert copy.track_id == 3
    assert copy.name == "A very long bass n (Copy)"
    assert len(copy.name) <= 25
    assert project.track(4).name == "Keys"
    assert project.mixer_entry(3).mute is True
    chain = project.plugin_nodes_for_track(3)
    assert len(chain) == 1
    assert chain[0].id != "node-bass"
    assert chain[0].plugin_uid == "vst3:synth"
    _assert_layout_consistent(project)


def test_duplicate_track_assigns_new_clip_ids(example_project):
    store = _make_store(example_project)

    copy = store.duplicate_track(1)

    assert [clip.pattern_id for clip in copy.clips] == ["beat"]
    assert copy.clips[0].id != "clip-a"


def test_reorder_track_moves_attached_state(example_project):
    store = _make_store(example_project)

    moved = store.reorder_track(1, 3)

    project = store.project
    assert moved.name == "Drums" and moved.track_id == 3
    assert [track.name for track in project.tracks] == ["Bass", "Keys", "Drums"]
    assert project.mixer_entry(1).mute is True
    assert project.mixer_entry(3).volume == pytest.approx(0.6)
    assert project.node("node-bass").track_id == 1
    _assert_layout_consistent(project)


def test_random_layout_edits_keep_ids_contiguous():
    rng = random.Random(1234)
    store = _make_store()
    for _ in range(4):
        track = store.create_track()
        store.add_plugin_node(track.track_id, plugin_uid=f"vst3:p{track.track_id}")

    for _ in range(200):
        count = len(store.project.tracks)
        operation = rng.choice(["create", "insert", "delete", "duplicate", "reorder"])
        target = rng.randint(1, count)
        if operation == "create":
            store.create_track()
        elif operation == "insert":
            store.insert_track(rng.randint(1, count + 1))
        elif operation == "delete":
            store.delete_tracks([target])
        elif operation == "duplicate":
            store.duplicate_track(target)
        else:
            store.reorder_track(target, rng.randint(1, count))
        _assert_layout_consistent(store.project)


def test_rename_track_validates_name():
    store = _make_store()
    store.create_track()

    with pytest.raises(ProjectEditError):
        store.rename_track(1, "   ")
    assert store.rename_track(1, "x" * 40).name == "x" * 25


def test_chain_enable_bypasses_nodes(example_project):
    store = _make_store(example_project)

    track = store.set_chain_enabled(2, False)

    assert track.chain_enabled is False
    assert store.project.node("node-bass").bypassed is True
    assert store.project.node("node-keys").bypassed is False
    assert store.set_chain_collapsed(2, False).chain_collapsed is False


def test_create_clip_defaults_to_track_end(example_project):
    store = _make_store(example_project)

    clip = store.create_clip(1, "beat")

    assert clip.start == 2.0
    assert clip.length == 1.0
    assert clip.pattern_id == "beat"


def test_create_clip_snaps_to_grid(example_project):
    store = _make_store(example_project)

    clip = store.create_clip(2, "beat", start=1.05, length=0.5)

    assert clip.start == pytest.approx(1.0625)
    assert clip.length == pytest.approx(0.5)


def test_create_clip_rejects_unknown_pattern(example_project):
    store = _make_store(example_project)

    with pytest.raises(EntityNotFoundError):
        store.create_clip(1, "missing")


def test_import_clip_file_infers_type_and_length():
    store = _make_store(Project(bpm=120.0, tracks=[Track(track_id=1)]))

    audio = store.import_clip_file(
        1,
        "loop.WAV",
        source_duration_seconds=3.0,
        waveform_peaks=[0.0, 0.5, 1.5],
    )
    midi = store.import_clip_file(1, "riff.mid")

    assert audio.type == "audio"
    assert audio.source_format == "wav"
    assert audio.length == pytest.approx(1.5)
    assert audio.waveform_peaks == [0.0, 0.5, 1.0]
    assert midi.type == "midi"
    assert midi.start == pytest.approx(1.5)
    assert midi.length == pytest.approx(8.0)


def test_import_clip_file_rejects_unknown_format():
    store = _make_store(Project(tracks=[Track(track_id=1)]))

    with pytest.raises(ProjectEditError):
        store.import_clip_file(1, "notes.txt")


@pytest.mark.parametrize(
    "name, fmt, mime, expected",
    [
        ("a.flac", None, None, "flac"),
        ("noext", "MP3", None, "mp3"),
        ("noext", None, "audio/x-wav", "wav"),
        ("song.midi", None, None, "midi"),
    ],
)
def test_resolve_source_format(name, fmt, mime, expected):
    assert resolve_source_format(name, fmt, mime) == expected


def test_move_clip_between_tracks(example_project):
    store = _make_store(example_project)

    clip = store.move_clip(1, "clip-a", 4.0, to_track_id=3)

    assert clip.start == 4.0
    assert store.project.track(1).clips == []
    assert store.project.track(3).clip("clip-a") is not None


def test_resize_and_fade_audio_clip():
    store = _make_store(Project(bpm=120.0, tracks=[Track(track_id=1)]))
    clip = store.import_clip_file(1, "pad.wav", length=2.0)

    faded = store.set_clip_fade(1, clip.id, fade_in=10.0, fade_out=0.5, fade_out_curve="sCurve")
    assert faded.fade_in == pytest.approx(2.0)
    assert faded.fade_out == pytest.approx(0.5)
    assert faded.fade_out_curve == "sCurve"

    resized = store.resize_clip(1, clip.id, 1.0)
    assert resized.length == 1.0
    assert resized.fade_in == pytest.approx(1.0)


def test_fade_rejected_for_pattern_clip(example_project):
    store = _make_store(example_project)

    with pytest.raises(ProjectEditError):
        store.set_clip_fade(1, "clip-a", fade_in=0.1)


def test_delete_clip(example_project):
    store = _make_store(example_project)

    removed = store.delete_clip(1, "clip-a")

    assert removed.id == "clip-a"
    assert store.project.track(1).clips == []


def test_pattern_lifecycle():
    store = _make_store(Project(tracks=[Track(track_id=1)]))

    pattern = store.create_pattern(
        length=8,
        swing=2.0,
        steps=[
            DrumStep(lane="kick", index=0),
            DrumStep(lane="kick", index=0, velocity=0.5),
            DrumStep(lane="hat", index=9),
        ],
    )
    assert pattern.swing == pytest.approx(0.95)
    assert [(step.lane, step.index, step.velocity) for step in pattern.steps] == [("kick", 0, 0.5)]

    updated = store.update_pattern_step(pattern.id, "snare", 4, 0.8)
    assert [(step.lane, step.index) for step in updated.steps] == [("kick", 0), ("snare", 4)]

    cleared = store.update_pattern_step(pattern.id, "kick", 0, 0)
    assert [(step.lane, step.index) for step in cleared.steps] == [("snare", 4)]

    shrunk = store.update_pattern(pattern.id, length=4)
    assert shrunk.length == 4
    assert shrunk.steps == []

    with pytest.raises(ProjectEditError):
        store.update_pattern_step(pattern.id, "kick", 4, 1.0)


def test_create_pattern_rejects_duplicate_id(example_project):
    store = _make_store(example_project)

    with pytest.raises(ProjectEditError):
        store.create_pattern(pattern_id="beat")


def test_move_midi_note_clamps():
    project = Project(
        patterns=[
            Pattern(id="melody", type="midi", length=16, notes=[MidiNote(id="n1", start=0, length=2)])
        ]
    )
    store = _make_store(project)

    note = store.move_midi_note("melody", "n1", start=20.0, pitch=200)

    assert note.start == pytest.approx(14.0)
    assert note.pitch == 127
    with pytest.raises(EntityNotFoundError):
        store.move_midi_note("melody", "ghost", start=1.0)


def test_delete_pattern_cascades_clips(example_project):
    store = _make_store(example_project)
    store.create_clip(3, "beat", start=8.0)

    removed = store.delete_pattern("beat")

    assert removed == 2
    assert store.project.pattern("beat") is None
    assert all(not track.clips for track in store.project.tracks)


def test_mixer_updates_clamp(example_project):
    store = _make_store(example_project)

    assert store.set_volume(1, 5.0).volume == pytest.approx(1.2)
    assert store.set_pan(1, -3.0).pan == -1.0
    assert store.set_mute(1, True).mute is True
    assert store.set_solo(3, True).solo is True
    assert store.set_record_arm(2, True).record_armed is True
    with pytest.raises(EntityNotFoundError):
        store.set_volume(8, 0.5)


def test_plugin_chain_operations():
    store = _make_store(Project(tracks=[Track(track_id=1)]))

    first = store.add_plugin_node(1, plugin_uid="vst3:a")
    second = store.add_plugin_node(1, plugin_uid="vst3:b")
    inserted = store.add_plugin_node(1, name="C", insert_index=0)

    chain = store.project.plugin_nodes_for_track(1)
    assert [node.id for node in chain] == [inserted.id, first.id, second.id]

    reordered = store.reorder_plugin_nodes(1, 0, 2)
    assert [node.id for node in reordered] == [first.id, second.id, inserted.id]

    store.remove_plugin_node(second.id)
    chain = store.project.plugin_nodes_for_track(1)
    assert [(node.id, node.plugin_index) for node in chain] == [(first.id, 0), (inserted.id, 1)]

    with pytest.raises(ProjectEditError):
        store.add_plugin_node(1)
    with pytest.raises(EntityNotFoundError):
        store.reorder_plugin_nodes(1, 5, 0)


def test_plugin_parameter_clamped_to_schema():
    store = _make_store(Project(tracks=[Track(track_id=1)]))
    node = store.add_plugin_node(
        1,
        plugin_uid="vst3:a",
        parameter_schema=[PluginParameter(id="gain", min=0.0, max=2.0, value=1.0)],
    )

    assert store.set_plugin_parameter(node.id, "gain", 9.0) == 2.0
    assert store.set_plugin_parameter(node.id, "free", -4.0) == -4.0
    assert store.set_plugin_bypass(node.id, True).bypassed is True
    assert store.project.node(node.id).params == {"gain": 2.0, "free": -4.0}


def test_apply_plugin_resolutions(example_project):
    store = _make_store(example_project)

    updated = store.apply_plugin_resolutions(
        [
            PluginResolution(
                node_id="node-keys",
                plugin_uid="internal:ultrasound",
                plugin_name="Ultrasound",
                track_id=1,
                plugin_index=4,
                parameter_schema=(PluginParameter(id="tone", value=0.3),),
                params={"tone": 0.3},
            ),
            PluginResolution(node_id="removed-meanwhile"),
        ]
    )

    node = store.project.node("node-keys")
    assert updated == 1
    assert node.plugin_uid == "internal:ultrasound"
    assert node.plugin == "Ultrasound"
    assert node.params == {"tone": 0.3}
    assert [entry.id for entry in node.parameter_schema] == ["tone"]
    # placement reported by the peer can be stale; the store keeps its own
    assert node.track_id == 3
    assert node.plugin_index == 0


def test_non_finite_numbers_rejected(example_project):
    store = _make_store(example_project)
    node = store.add_plugin_node(1, plugin_uid="vst3:a")
    revision = store.revision
    nan = float("nan")
    inf = float("inf")

    with pytest.raises(ProjectEditError, match="Clip start"):
        store.move_clip(1, "clip-a", inf)
    with pytest.raises(ProjectEditError, match="Clip length"):
        store.resize_clip(1, "clip-a", nan)
    with pytest.raises(ProjectEditError, match="Volume"):
        store.set_volume(1, nan)
    with pytest.raises(ProjectEditError, match="Pan"):
        store.set_pan(1, -inf)
    with pytest.raises(ProjectEditError, match="Swing"):
        store.update_pattern("beat", swing=nan)
    with pytest.raises(ProjectEditError, match="velocity"):
        store.update_pattern_step("beat", "kick", 0, nan)
    with pytest.raises(ProjectEditError, match="gain"):
        store.set_plugin_parameter(node.id, "gain", nan)
    with pytest.raises(ProjectEditError, match="number"):
        store.set_volume(1, "loud")

    assert store.revision == revision
    assert store.project.mixer_entry(1).volume == pytest.approx(0.6)
    assert store.project.node(node.id).params == {}


def test_non_finite_fade_rejected():
    store = _make_store(Project(bpm=120.0, tracks=[Track(track_id=1)]))
    clip = store.import_clip_file(1, "pad.wav", length=2.0)

    with pytest.raises(ProjectEditError, match="Fade in"):
        store.set_clip_fade(1, clip.id, fade_in=float("nan"))
    with pytest.raises(ProjectEditError, match="Source duration"):
        store.import_clip_file(1, "drone.wav", source_duration_seconds=float("inf"))

    assert store.project.track(1).clip(clip.id).fade_in == 0.0


def test_project_settings():
    store = _make_store()

    assert store.set_bpm(400) == 300.0
    assert store.set_bpm(97.12345) == pytest.approx(97.123)
    assert store.set_time_signature(7, 8).beats_per_bar == pytest.approx(3.5)
    with pytest.raises(ProjectEditError):
        store.set_time_signature(0, 4)
    assert store.rename_project(" Demo ") == "Demo"
    with pytest.raises(ProjectEditError):
        store.set_bpm(float("nan"))
    project = store.update_view(view_bars=2, bar_width=500, metronome_enabled=True)
    assert project.playlist_view_bars == 8
    assert project.playlist_bar_width == 220
    assert project.metronome_enabled is True


def test_snapshot_is_independent(example_project):
    store = _make_store(example_project)

    snapshot = store.snapshot()
    snapshot.tracks[0].name = "Mutated"

    assert store.project.track(1).name == "Drums"


def test_snap_to_grid():
    assert snap_to_grid(0.03) == pytest.approx(0.0625)
    assert snap_to_grid(1.0) == 1.0
