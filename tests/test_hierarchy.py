from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from yaomero import (
    ApisHandler,
    ClientState,
    ClosedError,
    Group,
    Hierarchy,
    HierarchyFilter,
    HierarchyNode,
    LoadState,
    NetworkError,
    OrphanedFolder,
    Owner,
    Project,
    Session,
    StateStore,
    visible_children,
)

if TYPE_CHECKING:
    from conftest import FakeOmero


def run_with_hierarchy(serve, credentials, coro_func, **settings):
    async def main():
        async with serve(**settings) as (uri, client_settings):
            session = await Session.connect(uri, credentials, client_settings)
            try:
                return await coro_func(Hierarchy(ApisHandler(session)))
            finally:
                await session.close()

    return asyncio.run(main())


def test_root_children(fake_omero: FakeOmero, serve, credentials) -> None:
    async def main(hierarchy: Hierarchy) -> tuple[HierarchyNode, ...]:
        return await hierarchy.root.load_children()

    children = run_with_hierarchy(serve, credentials, main)
    assert [c.label for c in children] == ["Project A", "Empty", "Orphaned Images"]
    assert isinstance(children[-1].entity, OrphanedFolder)
    assert all(c.parent is children[0].parent for c in children)


def test_orphaned_folder_is_kept_when_empty(
    fake_omero: FakeOmero, serve, credentials
) -> None:
    fake_omero.projects.clear()
    fake_omero.orphaned.clear()

    async def main(hierarchy: Hierarchy):
        (folder,) = await hierarchy.root.load_children()
        return folder, await folder.load_children()

    folder, images = run_with_hierarchy(serve, credentials, main)
    assert isinstance(folder.entity, OrphanedFolder)
    assert images == ()
    assert folder.state is LoadState.LOADED


def test_concurrent_expansions_are_coalesced(
    fake_omero: FakeOmero, serve, credentials
) -> None:
    fake_omero.delay = 0.05

    async def main(hierarchy: Hierarchy):
        root = await hierarchy.root.load_children()
        project = root[0]
        results = await asyncio.gather(*(project.load_children() for _ in range(10)))
        again = await project.load_children()
        return project, results, again

    project, results, again = run_with_hierarchy(serve, credentials, main)
    assert fake_omero.calls["datasets"] == 1
    assert all(r == results[0] for r in results)
    assert again is project.children
    assert [c.label for c in project.children] == ["Dataset 1", "Dataset 2"]
    assert project.state is LoadState.LOADED


def test_image_nodes_are_leaves(fake_omero: FakeOmero, serve, credentials) -> None:
    async def main(hierarchy: Hierarchy):
        (project, *_) = await hierarchy.root.load_children()
        (dataset, _) = await project.load_children()
        images = await dataset.load_children()
        return images, await images[0].load_children()

    images, leaf_children = run_with_hierarchy(serve, credentials, main)
    assert [n.label for n in images] == ["cells.tif", "slide.svs", "mask.tif"]
    assert leaf_children == ()
    assert images[0].state is LoadState.LOADED
    assert not images[0].may_have_children
    assert fake_omero.calls["img_data"] == 0


def test_orphaned_images_progress(fake_omero: FakeOmero, serve, credentials) -> None:
    seen: list[ClientState] = []

    async def main(hierarchy: Hierarchy):
        hierarchy.state.subscribe(seen.append)
        folder = (await hierarchy.root.load_children())[-1]
        return await folder.load_children()

    images = run_with_hierarchy(serve, credentials, main)
    assert sorted(n.entity.id for n in images) == [200, 201, 202]
    assert fake_omero.calls["img_data"] == 3

    assert max(s.orphaned_images_total for s in seen) == 3
    loaded = [s.orphaned_images_loaded for s in seen if s.orphaned_images_loading]
    assert loaded == sorted(loaded)
    assert seen[-1].orphaned_images_loaded == 3
    assert not seen[-1].orphaned_images_loading
    assert max(s.entities_loading for s in seen) >= 1
    assert seen[-1].entities_loading == 0


def test_failed_load_can_be_retried(fake_omero: FakeOmero, serve, credentials) -> None:
    async def main(hierarchy: Hierarchy):
        (project, *_) = await hierarchy.root.load_children()
        fake_omero.delay = 1
        with pytest.raises(NetworkError):
            await project.load_children()
        failed = (project.state, project.error)
        fake_omero.delay = 0
        await project.load_children()
        return project, failed

    project, (state, error) = run_with_hierarchy(
        serve, credentials, main, request_timeout=0.2
    )
    assert state is LoadState.LOAD_FAILED
    assert isinstance(error, NetworkError)
    assert project.state is LoadState.LOADED
    assert project.error is None
    assert fake_omero.calls["datasets"] == 2


def test_close_discards_late_loads(fake_omero: FakeOmero, serve, credentials) -> None:
    fake_omero.delay = 0.05

    async def main(hierarchy: Hierarchy):
        task = asyncio.ensure_future(hierarchy.root.load_children())
        await asyncio.sleep(0.01)
        hierarchy.close()
        late = await task
        with pytest.raises(ClosedError):
            await hierarchy.root.load_children()
        return late, hierarchy.root.state

    late, state = run_with_hierarchy(serve, credentials, main)
    assert late == ()
    assert state is LoadState.NOT_LOADED


def test_close_during_failing_load() -> None:
    class _Apis:
        server_uri = "http://fake"

        async def list_projects(self) -> list[Project]:
            await asyncio.sleep(0.01)
            raise NetworkError("unreachable")

    hierarchy = Hierarchy(_Apis())  # type: ignore[arg-type]

    async def main() -> None:
        task = asyncio.ensure_future(hierarchy.root.load_children())
        await asyncio.sleep(0)
        hierarchy.close()
        with pytest.raises(NetworkError):
            await task

    asyncio.run(main())
    assert hierarchy.root.state is LoadState.NOT_LOADED
    assert hierarchy.root.error is None


class _Node:
    """Minimal stand-in for a hierarchy node, for view tests."""

    def __init__(self, entity, children=()):
        self.entity = entity
        self.children = tuple(children)

    def walk(self):
        yield self
        for child in self.children:
            yield from child.walk()


ALICE = Owner(id=2, first_name="Alice")
BOB = Owner(id=3, first_name="Bob")
LAB = Group(id=5, name="lab")


ALL_NAMES = ["Mitosis study", "Other", "Container", "Orphaned Images"]


def _tree() -> _Node:
    a = Project(id=1, name="Mitosis study", owner=ALICE, group=LAB)
    b = Project(id=2, name="Other", owner=BOB, group=LAB)
    nested = _Node(Project(id=4, name="mitosis 2", owner=BOB))
    deep = _Node(Project(id=3, name="Container", owner=BOB), [nested])
    return _Node(None, [_Node(a), _Node(b), deep, _Node(OrphanedFolder())])


@pytest.mark.parametrize(
    "flt, expected",
    [
        (None, ALL_NAMES),
        (HierarchyFilter(), ALL_NAMES),
        (
            HierarchyFilter(text="MITOSIS"),
            ["Mitosis study", "Container", "Orphaned Images"],
        ),
        (HierarchyFilter(owner=ALICE), ["Mitosis study", "Orphaned Images"]),
        (HierarchyFilter(owner=Owner.all_members()), ALL_NAMES),
        (HierarchyFilter(group=LAB), ["Mitosis study", "Other", "Orphaned Images"]),
        (
            HierarchyFilter(group=Group.all_groups(), text="other"),
            ["Other", "Orphaned Images"],
        ),
        (HierarchyFilter(owner=BOB, text="study"), ["Orphaned Images"]),
    ],
)
def test_visible_children(flt: HierarchyFilter | None, expected: list[str]) -> None:
    root = _tree()
    visible = visible_children(root, flt)  # type: ignore[arg-type]
    names = [getattr(n.entity, "name", None) for n in visible]
    assert names == expected


def test_filter_does_not_mutate() -> None:
    root = _tree()
    before = [n.entity for n in root.walk()]
    flt = HierarchyFilter(text="nothing matches")
    visible_children(root, flt)  # type: ignore[arg-type]
    assert [n.entity for n in root.walk()] == before


def test_loading_counter_with_private_store() -> None:
    class _Apis:
        server_uri = "http://fake"

        async def list_projects(self) -> list[Project]:
            await asyncio.sleep(0.01)
            return [Project(id=1, name="P")]

    store = StateStore()
    counts: list[int] = []
    store.subscribe(lambda s: counts.append(s.entities_loading))
    hierarchy = Hierarchy(_Apis(), store)  # type: ignore[arg-type]

    children = asyncio.run(hierarchy.root.load_children())
    assert [c.label for c in children] == ["P", "Orphaned Images"]
    assert counts == [1, 0]
    assert hierarchy.root.key == ("children", "server", None)
