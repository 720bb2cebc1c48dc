import pytest

from foliage.models.fs import PermissionLevel, RootVO
from foliage.server.exceptions import (
    ForbiddenException,
    InvalidInputException,
    NotFoundException,
)
from foliage.server.services.permissions import PermissionResolver, PermissionService
from foliage.server.services.tree import TreeService
from tests.conftest import OTHER, OWNER, THIRD

READ = PermissionLevel.READ
WRITE = PermissionLevel.WRITE
ADMIN = PermissionLevel.ADMIN
OWNER_LEVEL = PermissionLevel.OWNER


def test_level_order() -> None:
    assert READ.rank < WRITE.rank < ADMIN.rank < OWNER_LEVEL.rank
    assert OWNER_LEVEL.satisfies(READ)
    assert WRITE.satisfies(WRITE)
    assert not READ.satisfies(WRITE)


def test_no_grant_denies() -> None:
    resolver = PermissionResolver({})
    assert resolver.resolve("u", (1, 2, 3)) is None
    assert not resolver.authorize("u", (1, 2, 3), READ)


def test_inherited_from_ancestor() -> None:
    resolver = PermissionResolver({("u", 1): WRITE})
    for path in [(1,), (1, 2), (1, 2, 3), (1, 5, 6, 7)]:
        assert resolver.resolve("u", path) == WRITE
        assert resolver.authorize("u", path, READ)
    assert resolver.resolve("other", (1, 2)) is None


def test_nearest_grant_wins() -> None:
    resolver = PermissionResolver({("u", 1): ADMIN, ("u", 2): READ, ("u", 3): WRITE})
    assert resolver.resolve("u", (1,)) == ADMIN
    # A closer lower grant overrides a farther higher one
    assert resolver.resolve("u", (1, 2)) == READ
    assert resolver.resolve("u", (1, 2, 9)) == READ
    assert not resolver.authorize("u", (1, 2, 9), WRITE)
    assert resolver.resolve("u", (1, 2, 3, 4)) == WRITE
    assert resolver.resolve_grant("u", (1, 2, 3, 4)) == (3, WRITE)


def test_resolution_is_idempotent() -> None:
    resolver = PermissionResolver({("u", 1): WRITE})
    assert resolver.resolve("u", (1, 2)) == resolver.resolve("u", (1, 2))


async def test_grant_gives_access_to_descendants(
    tree_service: TreeService,
    permission_service: PermissionService,
    personal_root: RootVO,
) -> None:
    folder = await tree_service.create_folder(OWNER, personal_root.id, "Shared")
    nested = await tree_service.create_folder(OWNER, folder.id, "Nested")

    with pytest.raises(ForbiddenException):
        await tree_service.get_node(OTHER, nested.id)

    result = await permission_service.add_grant(OWNER, folder.id, OTHER, WRITE)
    assert result.success

    node = await tree_service.get_node(OTHER, nested.id)
    assert node.permission == WRITE
    # Not above the grant
    with pytest.raises(ForbiddenException):
        await tree_service.get_node(OTHER, personal_root.id)


async def test_add_grant_requires_admin(
    tree_service: TreeService,
    permission_service: PermissionService,
    personal_root: RootVO,
) -> None:
    folder = await tree_service.create_folder(OWNER, personal_root.id, "Docs")
    await permission_service.add_grant(OWNER, folder.id, OTHER, WRITE)

    with pytest.raises(ForbiddenException):
        await permission_service.add_grant(OTHER, folder.id, THIRD, READ)

    await permission_service.update_grant(OWNER, folder.id, OTHER, ADMIN)
    await permission_service.add_grant(OTHER, folder.id, THIRD, READ)
    grants = await permission_service.list_grants(OTHER, folder.id)
    assert {(g.user_id, g.folder_id, g.permission) for g in grants} == {
        (OWNER, personal_root.id, OWNER_LEVEL),
        (OTHER, folder.id, ADMIN),
        (THIRD, folder.id, READ),
    }


async def test_add_grant_noop_when_already_sufficient(
    tree_service: TreeService,
    permission_service: PermissionService,
    personal_root: RootVO,
) -> None:
    parent = await tree_service.create_folder(OWNER, personal_root.id, "Parent")
    child = await tree_service.create_folder(OWNER, parent.id, "Child")
    await permission_service.add_grant(OWNER, parent.id, OTHER, WRITE)

    result = await permission_service.add_grant(OWNER, child.id, OTHER, READ)
    assert result.success
    assert "already" in (result.message or "")
    grants = await permission_service.list_grants(OWNER, child.id)
    assert (OTHER, parent.id, WRITE) in {
        (g.user_id, g.folder_id, g.permission) for g in grants
    }


async def test_owner_level_not_grantable(
    tree_service: TreeService,
    permission_service: PermissionService,
    personal_root: RootVO,
) -> None:
    with pytest.raises(InvalidInputException):
        await permission_service.add_grant(OWNER, personal_root.id, OTHER, OWNER_LEVEL)
    with pytest.raises(InvalidInputException):
        await permission_service.remove_grant(OWNER, personal_root.id, OWNER)


async def test_update_and_remove_missing_grant(
    tree_service: TreeService,
    permission_service: PermissionService,
    personal_root: RootVO,
) -> None:
    folder = await tree_service.create_folder(OWNER, personal_root.id, "Docs")
    with pytest.raises(NotFoundException):
        await permission_service.update_grant(OWNER, folder.id, OTHER, READ)
    with pytest.raises(NotFoundException):
        await permission_service.remove_grant(OWNER, folder.id, OTHER)


async def test_remove_grant_revokes_access(
    tree_service: TreeService,
    permission_service: PermissionService,
    personal_root: RootVO,
) -> None:
    folder = await tree_service.create_folder(OWNER, personal_root.id, "Docs")
    await permission_service.add_grant(OWNER, folder.id, OTHER, READ)
    assert (await tree_service.get_node(OTHER, folder.id)).permission == READ

    await permission_service.remove_grant(OWNER, folder.id, OTHER)
    with pytest.raises(ForbiddenException):
        await tree_service.get_node(OTHER, folder.id)


async def test_grants_on_files_rejected(
    tree_service: TreeService,
    permission_service: PermissionService,
    personal_root: RootVO,
) -> None:
    node = await tree_service.upload_file(OWNER, personal_root.id, "a.txt", b"a")
    with pytest.raises(InvalidInputException):
        await permission_service.add_grant(OWNER, node.id, OTHER, READ)
