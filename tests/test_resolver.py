"""Tests for merging raw manifests into the project table."""
import pytest

from repox.core.errors import InvalidRevision, UnresolvedRemote, UnresolvedRevision
from repox.manifest.parser import parse_manifest
from repox.manifest.resolver import check_revision, resolve, resolve_fetch_url


REMOTES = """
<remote name="origin" fetch="https://git.example.com" />
<default remote="origin" revision="main" />
"""


def doc(body: str, source: str = "default.xml"):
    return parse_manifest(f"<manifest>{body}</manifest>", source=source)


class TestMerge:
    """Tests for folding documents together."""

    def test_empty_document_is_identity(self):
        """Test: merging an empty document changes nothing.

        Given: a base document and an empty <manifest/>
        When: both are resolved
        Then: the result equals resolving the base alone
        """
        base = doc(REMOTES + '<project name="a" /><project name="b" path="lib/b" />')

        assert resolve([base, doc("", "empty.xml")]) == resolve([base])

    def test_resolution_is_deterministic(self):
        documents = [doc(REMOTES + '<project name="a" groups="x,y" />')]

        assert resolve(documents) == resolve(documents)

    def test_projects_keep_definition_order(self):
        manifest = resolve([doc(REMOTES + '<project name="z" /><project name="a" /><project name="m" />')])

        assert list(manifest.projects) == ["z", "a", "m"]

    def test_later_remote_definition_wins(self):
        """Test: a remote redefined by name in a later document replaces it.

        Given: origin defined in two documents with different fetch prefixes
        When: resolved
        Then: the later prefix is used for clone URLs
        """
        first = doc(REMOTES + '<project name="a" />', "first.xml")
        second = doc('<remote name="origin" fetch="https://mirror.example.com" />', "second.xml")

        manifest = resolve([first, second])

        assert manifest.clone_url(manifest.projects["a"]) == "https://mirror.example.com/a.git"

    def test_later_default_replaces_earlier(self):
        first = doc(REMOTES + '<project name="a" />', "first.xml")
        second = doc('<default remote="origin" revision="stable" />', "second.xml")

        manifest = resolve([first, second])

        assert manifest.projects["a"].revision == "stable"

    def test_redefined_path_replaces_project(self):
        first = doc(REMOTES + '<project name="a" path="src" />', "first.xml")
        second = doc('<project name="b" path="src" />', "second.xml")

        manifest = resolve([first, second])

        assert manifest.projects["src"].name == "b"
        assert manifest.project_count == 1

    def test_same_name_at_two_paths_gives_two_entries(self):
        manifest = resolve([doc(REMOTES + '<project name="a" path="one" /><project name="a" path="two" />')])

        assert [p.path for p in manifest.projects_named("a")] == ["one", "two"]


class TestInheritance:
    """Tests for remote/revision defaulting."""

    def test_project_inherits_default_remote_and_revision(self):
        manifest = resolve([doc(REMOTES + '<project name="a" />')])

        project = manifest.projects["a"]
        assert project.remote_name == "origin"
        assert project.revision == "main"

    def test_project_attributes_override_default(self):
        body = REMOTES + '<remote name="other" fetch="https://other.example.com" />'
        body += '<project name="a" remote="other" revision="v1.0" />'

        project = resolve([doc(body)]).projects["a"]

        assert project.remote_name == "other"
        assert project.revision == "v1.0"

    def test_remote_revision_sits_between_project_and_default(self):
        body = '<remote name="origin" fetch="https://git.example.com" revision="remote-branch" />'
        body += '<default remote="origin" revision="main" /><project name="a" />'

        assert resolve([doc(body)]).projects["a"].revision == "remote-branch"

    def test_inherited_values_do_not_depend_on_later_projects(self):
        """Test: adding unrelated projects does not change an existing one.

        Given: project a, and the same document plus project b
        When: both are resolved
        Then: a's effective remote and revision are identical
        """
        alone = resolve([doc(REMOTES + '<project name="a" />')])
        with_b = resolve([doc(REMOTES + '<project name="a" /><project name="b" revision="dev" />')])

        assert alone.projects["a"] == with_b.projects["a"]

    def test_sync_flags_default(self):
        project = resolve([doc(REMOTES + '<project name="a" />')]).projects["a"]

        assert project.sync_current_branch_only is False
        assert project.sync_submodules is False
        assert project.sync_tags is True

    def test_sync_flags_from_default_element(self):
        body = '<remote name="origin" fetch="https://git.example.com" />'
        body += '<default remote="origin" revision="main" sync-c="true" sync-s="true" sync-tags="false" />'
        body += '<project name="a" /><project name="b" sync-c="false" />'

        manifest = resolve([doc(body)])

        assert manifest.projects["a"].sync_current_branch_only is True
        assert manifest.projects["a"].sync_submodules is True
        assert manifest.projects["a"].sync_tags is False
        assert manifest.projects["b"].sync_current_branch_only is False

    def test_missing_remote_raises(self):
        with pytest.raises(UnresolvedRemote) as exc_info:
            resolve([doc('<default revision="main" /><project name="a" />')])

        assert exc_info.value.project_name == "a"

    def test_undefined_remote_raises(self):
        with pytest.raises(UnresolvedRemote) as exc_info:
            resolve([doc(REMOTES + '<project name="a" remote="nowhere" />')])

        assert exc_info.value.remote_name == "nowhere"

    def test_missing_revision_raises(self):
        body = '<remote name="origin" fetch="https://git.example.com" /><default remote="origin" />'

        with pytest.raises(UnresolvedRevision):
            resolve([doc(body + '<project name="a" />')])

    def test_malformed_revision_raises(self):
        with pytest.raises(InvalidRevision):
            resolve([doc(REMOTES + '<project name="a" revision="bad..ref" />')])


class TestExtendAndRemove:
    """Tests for extend-project and remove-project."""

    def test_extend_project_adds_groups(self):
        """Test: extend-project groups are added, not replaced.

        Given: project a in groups x and an extend-project adding y
        When: resolved
        Then: a is in x and y
        """
        base = doc(REMOTES + '<project name="a" groups="x" />', "base.xml")
        local = doc('<extend-project name="a" groups="y" />', "local.xml")

        project = resolve([base, local]).projects["a"]

        assert project.groups == ("x", "y")

    def test_extend_project_overrides_revision_and_remote(self):
        base = doc(
            REMOTES + '<remote name="fork" fetch="https://fork.example.com" /><project name="a" />',
            "base.xml",
        )
        local = doc('<extend-project name="a" revision="topic" remote="fork" />', "local.xml")

        manifest = resolve([base, local])

        assert manifest.projects["a"].revision == "topic"
        assert manifest.clone_url(manifest.projects["a"]) == "https://fork.example.com/a.git"

    def test_extend_project_path_restricts_match(self):
        base = doc(REMOTES + '<project name="a" path="one" /><project name="a" path="two" />')
        local = doc('<extend-project name="a" path="two" groups="picked" />', "local.xml")

        manifest = resolve([base, local])

        assert manifest.projects["one"].groups == ()
        assert manifest.projects["two"].groups == ("picked",)

    def test_extend_unknown_project_is_ignored(self):
        base = doc(REMOTES + '<project name="a" />')

        manifest = resolve([base, doc('<extend-project name="ghost" groups="x" />', "local.xml")])

        assert list(manifest.projects) == ["a"]

    def test_remove_then_redefine_in_later_document(self):
        """Test: a later document can remove a project and define it anew.

        Given: base defines a at revision main; local removes a; a later
               document defines it again with revision topic
        When: resolved
        Then: exactly one a exists, with revision topic
        """
        base = doc(REMOTES + '<project name="a" path="a" />', "base.xml")
        local = doc('<remove-project name="a" />', "local.xml")
        later = doc('<project name="a" path="a" revision="topic" />', "later.xml")

        manifest = resolve([base, local, later])

        assert manifest.project_count == 1
        assert manifest.projects["a"].revision == "topic"

    def test_extend_before_project_in_same_document_applies(self):
        """Test: extend-project sees every project of its own document.

        Given: one document with an extend-project for a written before a
        When: resolved
        Then: a carries the extended group
        """
        manifest = resolve([doc(REMOTES + '<extend-project name="a" groups="extra" /><project name="a" />')])

        assert "extra" in manifest.projects["a"].groups
        assert "extra" in manifest.projects["a"].effective_groups

    def test_remove_before_project_in_same_document_removes(self):
        """Test: remove-project is applied after the document's projects.

        Given: one document with remove-project a written before project a
        When: resolved
        Then: a is absent
        """
        manifest = resolve([doc(REMOTES + '<remove-project name="a" /><project name="a" /><project name="b" />')])

        assert list(manifest.projects) == ["b"]

    def test_extend_then_remove_in_same_document(self):
        manifest = resolve([doc(REMOTES + '<project name="a" /><remove-project name="a" /><extend-project name="a" groups="x" />')])

        assert manifest.project_count == 0

    def test_remove_project_removes_every_path(self):
        base = doc(REMOTES + '<project name="a" path="one" /><project name="a" path="two" /><project name="b" />')

        manifest = resolve([base, doc('<remove-project name="a" />', "local.xml")])

        assert list(manifest.projects) == ["b"]

    def test_remove_unknown_project_is_noop(self):
        base = doc(REMOTES + '<project name="a" />')

        assert resolve([base, doc('<remove-project name="ghost" />', "local.xml")]) == resolve([base])


class TestNestedProjects:
    """Tests for projects declared inside projects."""

    BODY = REMOTES + """
    <project name="platform/build" path="build" revision="v2" groups="core">
      <project name="soong" path="soong">
        <project name="blueprint" />
      </project>
    </project>
    """

    def test_children_are_prefixed_with_parent(self):
        manifest = resolve([doc(self.BODY)])

        assert list(manifest.projects) == ["build", "build/soong", "build/soong/blueprint"]
        assert manifest.projects["build/soong"].name == "platform/build/soong"
        assert manifest.projects["build/soong/blueprint"].name == "platform/build/soong/blueprint"

    def test_children_inherit_parent_attributes(self):
        child = resolve([doc(self.BODY)]).projects["build/soong/blueprint"]

        assert child.revision == "v2"
        assert child.groups == ("core",)
        assert child.parent_path == "build/soong"

    def test_children_of_lists_direct_children(self):
        manifest = resolve([doc(self.BODY)])

        assert [p.path for p in manifest.children_of("build")] == ["build/soong"]

    def test_removing_parent_removes_children(self):
        manifest = resolve([doc(self.BODY), doc('<remove-project name="platform/build" />', "local.xml")])

        assert manifest.project_count == 0


class TestFetchUrls:
    def test_absolute_fetch_is_unchanged(self):
        assert resolve_fetch_url("https://git.example.com", "https://m.example.com/manifest") == "https://git.example.com"

    def test_relative_fetch_resolves_against_manifest_url(self):
        assert resolve_fetch_url("..", "https://android.example.com/platform/manifest") == "https://android.example.com/"

    def test_relative_fetch_with_scp_style_url(self):
        assert resolve_fetch_url("..", "git@example.com:platform/manifest") == "git@example.com:platform/"

    def test_relative_fetch_without_manifest_url_is_unchanged(self):
        assert resolve_fetch_url("..", None) == ".."


@pytest.mark.parametrize("revision", ["main", "refs/heads/main", "refs/tags/v1.0", "release-1.2", "deadbeef"])
def test_check_revision_accepts_valid_refs(revision):
    check_revision("a", revision)


@pytest.mark.parametrize("revision", ["a..b", "-x", "main.lock", "has space", "x^", "x:y", "trailing/", "a@{1}"])
def test_check_revision_rejects_invalid_refs(revision):
    with pytest.raises(InvalidRevision):
        check_revision("a", revision)
