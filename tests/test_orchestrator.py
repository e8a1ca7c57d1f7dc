"""
End-to-end tests for the migration orchestrator against an in-memory server.
"""
import json

import pytest

from conftest import OTHER_USER_ID

from immich_migration.exceptions import (
    AssetUploadIncompleteError,
    CheckpointError,
    SourceParseError,
)
from immich_migration.orchestrator import MigrationOrchestrator
from immich_migration.utils.state_manager import STEP_ORDER, StepKind, StepState

pytestmark = pytest.mark.integration


@pytest.fixture
def library(export):
    """A small library: a tag tree, a live photo, a stack, an album, trash."""
    export.add_tag('tagA', 'Trips')
    export.add_tag('tagB', 'Paris')
    export.add_tag('other', 'Work', owner=OTHER_USER_ID)
    export.add_closure('tagA', 'tagA')
    export.add_closure('tagB', 'tagB')
    export.add_closure('tagA', 'tagB')

    export.add_asset('video1', type='VIDEO')
    export.add_asset('live1', live_photo_video_id='video1')
    export.add_asset('burst1', stack_id='stack1')
    export.add_asset('burst2', stack_id='stack1')
    export.add_asset('burst3', stack_id='stack1')
    export.add_asset('lonely', stack_id='stack2')
    export.add_asset('gone', stack_id='stack2', status='trashed')
    export.add_asset('plain', device_asset_id='NONE')
    export.add_asset('foreign', owner=OTHER_USER_ID)

    export.add_stack('stack1', 'burst2')
    export.add_stack('stack2', 'gone')

    export.add_tag_asset('burst1', 'tagB')
    export.add_tag_asset('gone', 'tagB')
    export.add_tag_asset('plain', 'tagA')

    export.add_album('album1', 'Paris 2023', description='Spring')
    export.add_album_asset('album1', 'live1')
    export.add_album_asset('album1', 'gone')
    export.add_album_asset('album1', 'burst2')
    export.write()
    return export


def load_checkpoint(config):
    return json.loads(config.progress_file.read_text())


def run(config, server, steps=None):
    orchestrator = MigrationOrchestrator(config, client=server)
    return orchestrator, orchestrator.run(steps)


class TestFullRun:

    def test_everything_migrated(self, library, migration_config, server):
        orchestrator, summary = run(migration_config, server)

        assert all(state is StepState.COMPLETED for state in orchestrator.step_states.values())
        assert summary['steps'] == {s.name: 'completed' for s in STEP_ORDER}

        checkpoint = load_checkpoint(migration_config)
        assert checkpoint['stepsCompleted'] == [1, 2, 3, 4, 5]
        assert checkpoint['interrupted'] is False
        assert 'foreign' not in checkpoint['assetMap']
        assert checkpoint['trashedAssets'] == {'gone': True}
        assert checkpoint['problemStacks'] == {'stack2': ""}
        assert server.calls['upload_asset'] == 7

    def test_metrics_written_next_to_checkpoint(self, library, migration_config, server):
        run(migration_config, server)

        metrics = json.loads(migration_config.metrics_file.read_text())
        assert migration_config.metrics_file.parent == migration_config.progress_file.parent
        assert set(metrics['steps']) == {s.name for s in STEP_ORDER}
        assert metrics['steps']['ASSETS']['counts']['created'] == 7
        assert metrics['total_errors'] == 0

    def test_tag_tree_created_parent_first(self, library, migration_config, server):
        run(migration_config, server)

        checkpoint = load_checkpoint(migration_config)
        tag_a, tag_b = checkpoint['tagMap']['tagA'], checkpoint['tagMap']['tagB']
        assert server.tags[tag_a].parent_id is None
        assert server.tags[tag_b].parent_id == tag_a
        assert 'other' not in checkpoint['tagFwdMap']

    def test_live_photo_linked(self, library, migration_config, server):
        run(migration_config, server)

        asset_map = load_checkpoint(migration_config)['assetMap']
        assert server.assets[asset_map['live1']]['live_photo_video_id'] == asset_map['video1']

    def test_stack_primary_first(self, library, migration_config, server):
        run(migration_config, server)

        checkpoint = load_checkpoint(migration_config)
        asset_map = checkpoint['assetMap']
        stack = server.stacks[checkpoint['stackMap']['stack1']]
        assert stack[0] == asset_map['burst2']
        assert sorted(stack) == sorted(asset_map[a] for a in ('burst1', 'burst2', 'burst3'))
        assert 'stack2' not in checkpoint['stackMap']
        assert len(server.stacks) == 1

    def test_trashed_asset_excluded_everywhere(self, library, migration_config, server):
        run(migration_config, server)

        checkpoint = load_checkpoint(migration_config)
        asset_map = checkpoint['assetMap']
        tag_b = checkpoint['tagMap']['tagB']
        album = server.albums[checkpoint['albumMap']['album1']]

        assert 'gone' not in asset_map
        assert server.tag_members[tag_b] == {asset_map['burst1']}
        assert sorted(album.asset_ids) == sorted([asset_map['live1'], asset_map['burst2']])

    def test_none_device_asset_id_counted_as_created(self, library, migration_config, server):
        orchestrator, summary = run(migration_config, server)

        asset_map = load_checkpoint(migration_config)['assetMap']
        assert asset_map['plain'] in server.assets
        counts = summary['metrics']['steps']['ASSETS']['counts']
        assert counts['created'] == 7
        assert counts.get('duplicates', 0) == 0
        assert counts['trashed'] == 1


class TestResume:

    def test_second_run_creates_nothing(self, library, migration_config, server):
        run(migration_config, server)
        created = server.created_entities()

        orchestrator, summary = run(migration_config, server)

        assert server.created_entities() == created
        assert server.calls['check_existing_assets'] == 6
        assert summary['metrics']['steps'] == {}

    def test_rerun_of_completed_steps_is_noop(self, library, migration_config, server):
        run(migration_config, server)
        created = server.created_entities()
        checkpoint = load_checkpoint(migration_config)
        checkpoint['stepsCompleted'] = []
        migration_config.progress_file.write_text(json.dumps(checkpoint))

        orchestrator, _ = run(migration_config, server)

        assert server.created_entities() == created
        assert all(state is StepState.COMPLETED for state in orchestrator.step_states.values())

    def test_upload_failure_interrupts_and_resumes(self, library, migration_config, server):
        server.fail_uploads.add('burst3.jpg')

        with pytest.raises(AssetUploadIncompleteError):
            run(migration_config, server)

        checkpoint = load_checkpoint(migration_config)
        assert checkpoint['interrupted'] is True
        assert checkpoint['stepsCompleted'] == [1]
        assert checkpoint['problemAssets'] == {'burst3': ""}
        assert 'burst1' in checkpoint['assetMap']

        # Problem assets are not retried until cleared
        server.fail_uploads.clear()
        orchestrator, _ = run(migration_config, server)
        assert orchestrator.step_states[StepKind.ASSETS] is StepState.RUNNING
        assert orchestrator.step_states[StepKind.ALBUMS] is StepState.NOT_STARTED
        assert load_checkpoint(migration_config)['interrupted'] is False

        checkpoint = load_checkpoint(migration_config)
        checkpoint['problemAssets'] = {}
        migration_config.progress_file.write_text(json.dumps(checkpoint))
        uploads_before = server.calls['upload_asset']

        orchestrator, _ = run(migration_config, server)

        assert server.calls['upload_asset'] == uploads_before + 1
        assert all(state is StepState.COMPLETED for state in orchestrator.step_states.values())
        stack = server.stacks[load_checkpoint(migration_config)['stackMap']['stack1']]
        assert len(stack) == 3

    def test_uploaded_but_unrecorded_asset_found_on_server(self, library, migration_config, server):
        run(migration_config, server, steps=[StepKind.CREATE_TAGS, StepKind.ASSETS])
        checkpoint = load_checkpoint(migration_config)
        lost = checkpoint['assetMap'].pop('burst1')
        checkpoint['stepsCompleted'] = [1]
        migration_config.progress_file.write_text(json.dumps(checkpoint))
        uploads_before = server.calls['upload_asset']

        run(migration_config, server)

        assert server.calls['upload_asset'] == uploads_before
        assert load_checkpoint(migration_config)['assetMap']['burst1'] == lost


class TestGating:

    def test_dependent_steps_wait_for_assets(self, library, migration_config, server):
        orchestrator, _ = run(
            migration_config, server,
            steps=[StepKind.CREATE_TAGS, StepKind.TAG_ASSETS, StepKind.ALBUMS],
        )

        assert orchestrator.step_states[StepKind.CREATE_TAGS] is StepState.COMPLETED
        assert orchestrator.step_states[StepKind.TAG_ASSETS] is StepState.NOT_STARTED
        assert orchestrator.step_states[StepKind.ALBUMS] is StepState.NOT_STARTED
        assert server.calls['tag_assets'] == 0
        assert server.calls['create_album'] == 0
        assert load_checkpoint(migration_config)['stepsCompleted'] == [1]

    def test_steps_run_in_fixed_order(self, library, migration_config, server):
        run(migration_config, server, steps=[StepKind.ALBUMS, StepKind.ASSETS, StepKind.CREATE_TAGS])

        assert load_checkpoint(migration_config)['stepsCompleted'] == [1, 2, 5]

    def test_stacks_only_run_uses_staged_ids(self, library, migration_config, server):
        run(migration_config, server, steps=[StepKind.ASSETS])

        orchestrator, _ = run(migration_config, server, steps=[StepKind.STACKS])

        assert orchestrator.step_states[StepKind.STACKS] is StepState.COMPLETED
        assert len(server.stacks) == 1


class TestFailures:

    def test_malformed_export_marks_interrupted(self, library, migration_config, server):
        with open(library.db_files_dir / 'asset stacks.txt', 'a', encoding='utf-8') as f:
            f.write("broken-row\n")

        with pytest.raises(SourceParseError):
            run(migration_config, server)

        assert load_checkpoint(migration_config)['interrupted'] is True
        assert server.created_entities() == 0

    def test_metrics_written_when_interrupted(self, library, migration_config, server):
        with open(library.db_files_dir / 'asset stacks.txt', 'a', encoding='utf-8') as f:
            f.write("broken-row\n")

        with pytest.raises(SourceParseError):
            run(migration_config, server)

        metrics = json.loads(migration_config.metrics_file.read_text())
        assert metrics['steps'] == {}

    def test_corrupt_checkpoint_is_fatal(self, library, migration_config, server):
        migration_config.progress_file.parent.mkdir(parents=True, exist_ok=True)
        migration_config.progress_file.write_text("{oops")

        with pytest.raises(CheckpointError):
            run(migration_config, server)

        assert migration_config.progress_file.read_text() == "{oops"

    def test_tag_tables_not_read_once_done(self, library, migration_config, server):
        run(migration_config, server, steps=[StepKind.CREATE_TAGS, StepKind.ASSETS])
        (library.db_files_dir / 'tags.txt').write_text("header\nbroken\n", encoding='utf-8')

        orchestrator, _ = run(migration_config, server)

        assert orchestrator.step_states[StepKind.TAG_ASSETS] is StepState.COMPLETED

    def test_existing_mapping_survives_unknown_new_id(self, library, migration_config, server):
        migration_config.progress_file.parent.mkdir(parents=True, exist_ok=True)
        migration_config.progress_file.write_text(json.dumps({'assetMap': {'plain': 'not-a-uuid'}}))

        run(migration_config, server, steps=[StepKind.CREATE_TAGS, StepKind.ASSETS])

        mapped = load_checkpoint(migration_config)['assetMap']['plain']
        assert mapped in server.assets
