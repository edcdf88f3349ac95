"""Tests for NoteService: CRUD, timestamps and applying suggestions."""
import pytest

from smartnote_mcp.exceptions import (
    ErrorCode,
    FolderError,
    NoteNotFoundError,
    ProviderUnavailableError,
    StructuralLimitViolation,
    TagError,
    ValidationError,
)
from smartnote_mcp.services.embedding_service import EmbeddingService
from tests.fakes import HookedEmbeddingProvider, KeywordEmbeddingProvider


class TestCrud:
    def test_create_lands_in_default_folder(self, note_service, folder_repository, owner):
        note = note_service.create_note("  Hello  ", "<p>World</p>", tags=["Greeting", "greeting"])

        default = folder_repository.ensure_default_folder(owner)
        assert note.folder_id == default.id
        assert note.owner_id == owner
        assert note.title == "Hello"
        assert note.tag_names == ["greeting"]
        assert not note.is_auto_organized

    def test_create_requires_title(self, note_service):
        with pytest.raises(ValidationError) as exc_info:
            note_service.create_note("   ", "content")
        assert exc_info.value.code == ErrorCode.NOTE_TITLE_REQUIRED

    def test_create_rejects_unknown_folder(self, note_service):
        with pytest.raises(FolderError):
            note_service.create_note("Title", folder_id="missing")

    def test_create_rejects_other_owners_folder(self, note_service):
        theirs = note_service.create_folder("Private", owner_id="someone-else")
        with pytest.raises(FolderError):
            note_service.create_note("Title", folder_id=theirs.id)

    def test_invalid_tag(self, note_service):
        with pytest.raises(TagError):
            note_service.create_note("Title", tags=["x" * 80])

    def test_get_and_delete(self, note_service):
        note = note_service.create_note("Temp", "")
        assert note_service.get_note(note.id).title == "Temp"

        note_service.delete_note(note.id)

        with pytest.raises(NoteNotFoundError):
            note_service.get_note(note.id)
        with pytest.raises(NoteNotFoundError):
            note_service.delete_note(note.id)

    def test_list_notes_by_folder(self, note_service):
        folder = note_service.create_folder("Work")
        inside = note_service.create_note("A", "", folder_id=folder.id)
        note_service.create_note("B", "")

        assert [n.id for n in note_service.list_notes(folder_id=folder.id)] == [inside.id]
        assert len(note_service.list_notes()) == 2


class TestContentTimestamp:
    def test_title_and_content_changes_touch_it(self, note_service):
        note = note_service.create_note("Title", "Body")

        retitled = note_service.update_note(note.id, title="New title")
        assert retitled.content_updated_at > note.content_updated_at

        rewritten = note_service.update_note(note.id, content="New body")
        assert rewritten.content_updated_at > retitled.content_updated_at

    def test_unchanged_values_do_not_touch_it(self, note_service):
        note = note_service.create_note("Title", "Body")
        same = note_service.update_note(note.id, title="Title", content="Body")
        assert same.content_updated_at == note.content_updated_at

    def test_metadata_changes_do_not_touch_it(self, note_service):
        note = note_service.create_note("Title", "Body")
        folder = note_service.create_folder("Elsewhere")

        moved = note_service.update_note(note.id, folder_id=folder.id, tags=["a", "b"])

        assert moved.folder_id == folder.id
        assert moved.tag_names == ["a", "b"]
        assert moved.content_updated_at == note.content_updated_at
        assert moved.updated_at > note.updated_at

    def test_empty_title_rejected(self, note_service):
        note = note_service.create_note("Title", "Body")
        with pytest.raises(ValidationError):
            note_service.update_note(note.id, title=" ")


class TestAnalyzeAndApply:
    def test_offline_quicksort_suggestion_applied(self, offline_note_service, folder_repository, owner):
        note = offline_note_service.create_note("Snippet", "def quicksort(arr): ...")

        suggestion = offline_note_service.analyze("", note_id=note.id)
        assert suggestion.heuristic_only
        assert offline_note_service.get_note(note.id).ai_suggestions["folders"][0]["name"] == "Python"

        applied = offline_note_service.apply_suggestion(note.id)

        folder = folder_repository.get(applied.folder_id)
        assert folder.name == "Python"
        assert folder.depth == 0
        assert applied.tag_names == ["python"]
        assert applied.is_auto_organized
        assert applied.content_updated_at == note.content_updated_at

    def test_applying_twice_reuses_the_created_folder(self, offline_note_service, folder_repository, owner):
        first = offline_note_service.create_note("One", "def quicksort(arr): ...")
        second = offline_note_service.create_note("Two", "def mergesort(arr): ...")
        suggestion = offline_note_service.analyze("def quicksort(arr): ...")

        a = offline_note_service.apply_suggestion(first.id, suggestion)
        b = offline_note_service.apply_suggestion(second.id, suggestion.model_dump(mode="json"))

        assert a.folder_id == b.folder_id
        assert [f.name for f in folder_repository.get_all(owner)].count("Python") == 1

    def test_semantic_suggestion_uses_existing_notes(
        self, make_note_service, settings, owner
    ):
        provider = KeywordEmbeddingProvider(["sort", "array", "pivot", "soup", "broth"])
        embedding_service = EmbeddingService(provider, settings, sleep=lambda _: None)
        try:
            service = make_note_service(embedding_service)
            algorithms = service.create_folder("Algorithms")
            recipes = service.create_folder("Recipes")
            service.create_note("Lecture 1", "sort the array by pivot", folder_id=algorithms.id, tags=["sorting"])
            service.create_note("Lecture 2", "pivot and sort", folder_id=algorithms.id, tags=["sorting"])
            service.create_note("Dinner", "soup with broth", folder_id=recipes.id, tags=["cooking"])

            suggestion = service.analyze(
                "def quicksort(arr):\n    # sort the array around a pivot\n    pass"
            )
        finally:
            embedding_service.shutdown()

        assert not suggestion.heuristic_only
        assert suggestion.folder.folder_id == algorithms.id
        assert suggestion.confidence_level == "high"
        tag_names = [t.name for t in suggestion.tags]
        assert "sorting" in tag_names
        assert "python" in tag_names
        assert "cooking" not in tag_names

    def test_folder_index_out_of_range(self, offline_note_service):
        note = offline_note_service.create_note("Snippet", "def quicksort(arr): ...")
        offline_note_service.analyze("", note_id=note.id)
        with pytest.raises(ValidationError):
            offline_note_service.apply_suggestion(note.id, folder_index=5)

    def test_apply_without_suggestion(self, offline_note_service):
        note = offline_note_service.create_note("Plain", "text")
        with pytest.raises(ValidationError):
            offline_note_service.apply_suggestion(note.id)

    def test_depth_limit_is_enforced_on_apply(self, offline_note_service):
        note = offline_note_service.create_note("Snippet", "text")
        a = offline_note_service.create_folder("A")
        b = offline_note_service.create_folder("B", parent_id=a.id)
        c = offline_note_service.create_folder("C", parent_id=b.id)
        forged = {
            "folders": [{
                "name": "Too Deep", "parent_id": c.id, "depth": 2,
                "is_new": True, "confidence": 0.9,
            }],
        }
        with pytest.raises(StructuralLimitViolation):
            offline_note_service.apply_suggestion(note.id, forged)


class TestEmbeddingMaintenance:
    def test_status_and_invalidate(self, note_service):
        notes = [note_service.create_note("One", "a"), note_service.create_note("Two", "b")]
        note_service.cache.get_or_compute_many(notes)

        assert note_service.embedding_status()["fresh"] == 2
        assert note_service.invalidate_all_embeddings() == 2
        status = note_service.embedding_status()
        assert status["stale"] == 2
        assert status["fresh"] == 0


class TestConcurrentEdits:
    def test_edit_during_analysis_is_kept(self, make_note_service, settings):
        provider = HookedEmbeddingProvider()
        embedding_service = EmbeddingService(provider, settings, sleep=lambda _: None)
        try:
            service = make_note_service(embedding_service)
            note = service.create_note("Draft", "old body")
            provider.on_embed = lambda: service.update_note(
                note.id, content="NEW body typed by user"
            )

            service.analyze("", note_id=note.id)
            stored = service.get_note(note.id)
            status = service.embedding_status()
        finally:
            embedding_service.shutdown()

        assert stored.content == "NEW body typed by user"
        assert stored.content_updated_at > note.content_updated_at
        assert stored.ai_suggestions is not None
        # The vector computed from "old body" must not pass as current
        assert status["fresh"] == 0

    def test_apply_keeps_concurrent_content(self, offline_note_service):
        note = offline_note_service.create_note("Snippet", "def quicksort(arr): ...")
        suggestion = offline_note_service.analyze("", note_id=note.id)
        edited = offline_note_service.update_note(note.id, content="def quicksort(a): pass")

        applied = offline_note_service.apply_suggestion(note.id, suggestion)

        assert applied.content == "def quicksort(a): pass"
        assert applied.content_updated_at == edited.content_updated_at


class TestFavorites:
    def test_toggle_and_list(self, offline_note_service):
        first = offline_note_service.create_note("First", "")
        second = offline_note_service.create_note("Second", "")

        assert offline_note_service.toggle_favorite(first.id).is_favorite
        offline_note_service.toggle_favorite(second.id)

        favorites = offline_note_service.list_favorites()
        assert [n.id for n in favorites] == [second.id, first.id]

        assert not offline_note_service.toggle_favorite(first.id).is_favorite
        assert [n.id for n in offline_note_service.list_favorites()] == [second.id]

    def test_favorite_is_metadata_only(self, offline_note_service):
        note = offline_note_service.create_note("Pinned", "body")
        toggled = offline_note_service.toggle_favorite(note.id)
        assert toggled.content_updated_at == note.content_updated_at

    def test_unknown_note(self, offline_note_service):
        with pytest.raises(NoteNotFoundError):
            offline_note_service.toggle_favorite("missing")


class TestTags:
    def test_add_and_remove_on_note(self, offline_note_service):
        note = offline_note_service.create_note("Note", "body", tags=["keep"])

        tagged = offline_note_service.add_tag_to_note(note.id, "New Tag")
        again = offline_note_service.add_tag_to_note(note.id, "new-tag")
        assert tagged.tag_names == ["keep", "new-tag"]
        assert again.tag_names == ["keep", "new-tag"]
        assert again.content_updated_at == note.content_updated_at

        untagged = offline_note_service.remove_tag_from_note(note.id, "New Tag")
        assert untagged.tag_names == ["keep"]
        assert offline_note_service.list_tags()["new-tag"] == 0

    def test_notes_by_tags(self, offline_note_service):
        both = offline_note_service.create_note("Both", "", tags=["alpha", "beta"])
        alpha = offline_note_service.create_note("Alpha", "", tags=["alpha"])
        offline_note_service.create_note("Untagged", "")

        any_ids = {n.id for n in offline_note_service.list_notes_by_tags(["alpha", "beta"])}
        all_ids = [n.id for n in offline_note_service.list_notes_by_tags(["alpha", "beta"], match_all=True)]

        assert any_ids == {both.id, alpha.id}
        assert all_ids == [both.id]
        with pytest.raises(TagError):
            offline_note_service.list_notes_by_tags(["nope"])
        with pytest.raises(TagError):
            offline_note_service.list_notes_by_tags([" "])

    def test_rename(self, offline_note_service):
        note = offline_note_service.create_note("Note", "", tags=["draft"])
        offline_note_service.create_note("Other", "", tags=["final"])

        assert offline_note_service.rename_tag("Draft", "Work In Progress").name == "work-in-progress"
        assert offline_note_service.get_note(note.id).tag_names == ["work-in-progress"]
        with pytest.raises(TagError):
            offline_note_service.rename_tag("work-in-progress", "final")
        with pytest.raises(TagError):
            offline_note_service.rename_tag("missing", "anything")

    def test_delete_and_cleanup(self, offline_note_service):
        first = offline_note_service.create_note("A", "", tags=["gone", "stay"])
        offline_note_service.create_note("B", "", tags=["gone"])
        offline_note_service.add_tag_to_note(first.id, "orphan")
        offline_note_service.remove_tag_from_note(first.id, "orphan")

        assert offline_note_service.delete_tag("gone") == 2
        assert offline_note_service.get_note(first.id).tag_names == ["stay"]
        assert offline_note_service.delete_unused_tags() == 1
        assert offline_note_service.list_tags() == {"stay": 1}
        with pytest.raises(TagError):
            offline_note_service.delete_tag("gone")


class TestRebuild:
    def test_rebuilds_stale_embeddings_in_batches(self, note_service, fake_provider):
        notes = [note_service.create_note("One", "a"), note_service.create_note("Two", "b")]
        note_service.cache.get_or_compute_many(notes)
        note_service.invalidate_all_embeddings()
        calls_before = fake_provider.embed_count

        summary = note_service.rebuild_embeddings()

        assert summary == {"total": 2, "rebuilt": 2, "conflicts": 0, "failed": 0}
        assert fake_provider.embed_count == calls_before + 2
        assert note_service.embedding_status()["fresh"] == 2
        assert note_service.rebuild_embeddings()["rebuilt"] == 0

    def test_edit_during_rebuild_stays_stale(self, make_note_service, settings):
        provider = HookedEmbeddingProvider()
        embedding_service = EmbeddingService(provider, settings, sleep=lambda _: None)
        try:
            service = make_note_service(embedding_service)
            note = service.create_note("Draft", "old body")
            provider.on_embed = lambda: service.update_note(note.id, content="new body")

            service.rebuild_embeddings()
            status = service.embedding_status()
        finally:
            embedding_service.shutdown()

        assert status["stale"] == 1
        assert status["reasons"] == {"content_updated": 1}

    def test_requires_embeddings(self, offline_note_service):
        offline_note_service.create_note("One", "a")
        with pytest.raises(ProviderUnavailableError):
            offline_note_service.rebuild_embeddings()
