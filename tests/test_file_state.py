from tfnav.indexer.file_state import FileStateTracker


class TestFileStateTracker:
    def test_plan_detects_new_changed_and_removed(self, write_tf, tmp_path) -> None:
        a = write_tf("a.tf", 'variable "a" {}\n')
        b = write_tf("b.tf", 'variable "b" {}\n')
        tracker = FileStateTracker(tmp_path / ".state")
        tracker.record_index({a: 1, b: 1})

        assert tracker.plan_incremental_update([a, b]) == ([], [])

        write_tf("a.tf", 'variable "a" {}\nvariable "a2" {}\n')
        c = write_tf("c.tf", "")
        to_index, to_remove = tracker.plan_incremental_update([a, c])
        assert to_index == [a, c]
        assert to_remove == [b]

    def test_state_persists(self, write_tf, tmp_path) -> None:
        a = write_tf("a.tf", 'variable "a" {}\n')
        state_path = tmp_path / ".state"
        tracker = FileStateTracker(state_path)
        tracker.update_file_record(a, 1)
        tracker.commit()

        reloaded = FileStateTracker(state_path)
        assert reloaded.is_tracked(a)
        assert not reloaded.has_file_changed(a)
        assert reloaded.get_stats()["indexed_files"] == 1

    def test_corrupt_state_starts_fresh(self, tmp_path) -> None:
        state_path = tmp_path / ".state"
        state_path.mkdir()
        (state_path / "index_state.json").write_text("{broken")
        assert FileStateTracker(state_path).file_records == {}

    def test_remove_file_record(self, write_tf, tmp_path) -> None:
        a = write_tf("a.tf", "")
        tracker = FileStateTracker(tmp_path / ".state")
        tracker.record_index({a: 0})

        assert tracker.remove_file_record(a)
        assert not tracker.remove_file_record(a)

    def test_hash_of_missing_file(self, tmp_path) -> None:
        tracker = FileStateTracker(tmp_path / ".state")
        assert tracker.compute_file_hash(str(tmp_path / "missing.tf")) == ""
