import pytest

from foliage.models.base import OperationStatus
from foliage.models.fs import RootCategory, RootVO
from foliage.server.exceptions import (
    ConflictException,
    ForbiddenException,
    InvalidInputException,
    QuotaExceededException,
)
from foliage.server.services.blob import derived_key, object_key
from foliage.server.services.tree import TreeService
from tests.conftest import OTHER, OWNER
from tests.server.services.fakes import FakeBlobStorage


async def test_copy_folder_subtree(
    tree_service: TreeService,
    blob_storage: FakeBlobStorage,
    personal_root: RootVO,
) -> None:
    source = await tree_service.create_folder(OWNER, personal_root.id, "Src")
    sub = await tree_service.create_folder(OWNER, source.id, "Sub")
    await tree_service.upload_file(OWNER, source.id, "a.txt", b"aa")
    await tree_service.upload_file(OWNER, sub.id, "b.txt", b"bbb")
    target = await tree_service.create_folder(OWNER, personal_root.id, "Dst")

    result = await tree_service.copy_nodes(OWNER, [source.id], target.id)
    assert result.copied_count == 4
    assert result.s3_success_count == 2
    assert result.s3_fail_count == 0
    assert result.failed_ids == []
    assert result.status == OperationStatus.OK

    (copy,) = await tree_service.list_children(OWNER, target.id)
    assert copy.name == "Src"
    assert copy.id != source.id
    assert copy.path == [personal_root.id, target.id, copy.id]

    copy_children = await tree_service.list_children(OWNER, copy.id)
    assert [c.name for c in copy_children] == ["Sub", "a.txt"]
    copied_file = copy_children[1]
    assert blob_storage.objects[object_key(copied_file.id)] == b"aa"
    (copied_b,) = await tree_service.list_children(OWNER, copy_children[0].id)
    assert copied_b.path == [
        personal_root.id,
        target.id,
        copy.id,
        copy_children[0].id,
        copied_b.id,
    ]
    assert blob_storage.objects[object_key(copied_b.id)] == b"bbb"
    assert (await tree_service.get_usage(OWNER, personal_root.id)).used == 10


async def test_copy_override_is_idempotent(
    tree_service: TreeService, personal_root: RootVO
) -> None:
    x = await tree_service.upload_file(OWNER, personal_root.id, "x.txt", b"xx")
    y = await tree_service.create_folder(OWNER, personal_root.id, "Y")

    for _ in range(2):
        result = await tree_service.copy_nodes(OWNER, [x.id], y.id, override=True)
        assert result.copied_count == 1
        children = await tree_service.list_children(OWNER, y.id)
        assert [c.name for c in children] == ["x.txt"]

    assert (await tree_service.get_usage(OWNER, personal_root.id)).used == 4


async def test_copy_conflict_without_override(
    tree_service: TreeService, personal_root: RootVO
) -> None:
    x = await tree_service.upload_file(OWNER, personal_root.id, "x.txt", b"xx")
    y = await tree_service.create_folder(OWNER, personal_root.id, "Y")
    await tree_service.copy_nodes(OWNER, [x.id], y.id)

    with pytest.raises(ConflictException):
        await tree_service.copy_nodes(OWNER, [x.id], y.id)
    assert len(await tree_service.list_children(OWNER, y.id)) == 1


async def test_copy_partial_blob_failure(
    tree_service: TreeService,
    blob_storage: FakeBlobStorage,
    personal_root: RootVO,
) -> None:
    source = await tree_service.create_folder(OWNER, personal_root.id, "Src")
    good = await tree_service.upload_file(OWNER, source.id, "good.txt", b"g")
    bad = await tree_service.upload_file(OWNER, source.id, "bad.txt", b"b")
    target = await tree_service.create_folder(OWNER, personal_root.id, "Dst")
    blob_storage.fail_keys.add(object_key(bad.id))

    result = await tree_service.copy_nodes(OWNER, [source.id], target.id)
    assert result.copied_count == 3
    assert result.s3_success_count == 1
    assert result.s3_fail_count == 1
    assert result.status == OperationStatus.PARTIAL

    (copy,) = await tree_service.list_children(OWNER, target.id)
    copies = {c.name: c.id for c in await tree_service.list_children(OWNER, copy.id)}
    # Metadata committed for both files
    assert set(copies) == {"good.txt", "bad.txt"}
    assert result.failed_ids == [copies["bad.txt"]]
    assert object_key(copies["good.txt"]) in blob_storage.objects
    assert object_key(good.id) in blob_storage.objects


async def test_copy_includes_derived_artifacts(
    tree_service: TreeService,
    blob_storage: FakeBlobStorage,
    personal_root: RootVO,
) -> None:
    metadata = {"sheets": [{"tableName": "sales"}]}
    sheet = await tree_service.upload_file(
        OWNER, personal_root.id, "book.xlsx", b"xlsx", metadata=metadata
    )
    blob_storage.objects[derived_key(sheet.id, "sales")] = b"parquet"
    target = await tree_service.create_folder(OWNER, personal_root.id, "Dst")

    result = await tree_service.copy_nodes(OWNER, [sheet.id], target.id)
    assert result.s3_success_count == 1
    (copy,) = await tree_service.list_children(OWNER, target.id)
    assert copy.metadata == metadata
    assert blob_storage.objects[derived_key(copy.id, "sales")] == b"parquet"


async def test_copy_missing_derived_artifact_fails_file(
    tree_service: TreeService, personal_root: RootVO
) -> None:
    sheet = await tree_service.upload_file(
        OWNER,
        personal_root.id,
        "book.xlsx",
        b"xlsx",
        metadata={"sheets": [{"tableName": "sales"}]},
    )
    target = await tree_service.create_folder(OWNER, personal_root.id, "Dst")

    result = await tree_service.copy_nodes(OWNER, [sheet.id], target.id)
    assert result.s3_fail_count == 1
    assert result.status == OperationStatus.PARTIAL


async def test_copy_validation(
    tree_service: TreeService, personal_root: RootVO
) -> None:
    a = await tree_service.create_folder(OWNER, personal_root.id, "A")
    child = await tree_service.create_folder(OWNER, a.id, "Child")
    temporary = await tree_service.get_or_create_root(
        OWNER, RootCategory.PERSONAL_TEMPORARY
    )

    with pytest.raises(InvalidInputException, match="root"):
        await tree_service.copy_nodes(OWNER, [personal_root.id], a.id)
    with pytest.raises(InvalidInputException, match="itself"):
        await tree_service.copy_nodes(OWNER, [a.id], child.id)
    with pytest.raises(InvalidInputException, match="same folder"):
        await tree_service.copy_nodes(OWNER, [child.id], a.id)
    with pytest.raises(InvalidInputException, match="temporary"):
        await tree_service.copy_nodes(OWNER, [a.id], temporary.id)
    with pytest.raises(ForbiddenException):
        await tree_service.copy_nodes(OTHER, [child.id], personal_root.id)


async def test_copy_out_of_temporary(
    tree_service: TreeService, personal_root: RootVO
) -> None:
    temporary = await tree_service.get_or_create_root(
        OWNER, RootCategory.PERSONAL_TEMPORARY
    )
    scratch = await tree_service.upload_file(OWNER, temporary.id, "s.txt", b"sss")

    await tree_service.copy_nodes(OWNER, [scratch.id], personal_root.id)
    (copy,) = await tree_service.list_children(OWNER, personal_root.id)
    assert copy.expire_time is None
    assert (await tree_service.get_usage(OWNER, personal_root.id)).used == 3
    assert (await tree_service.get_usage(OWNER, temporary.id)).used == 3


async def test_copy_charges_target_quota(
    tree_service: TreeService, personal_root: RootVO
) -> None:
    small = await tree_service.create_root(
        OWNER, RootCategory.ORGANIZATIONAL, "Small", max_bytes=5
    )
    big = await tree_service.upload_file(OWNER, personal_root.id, "big.bin", b"x" * 6)

    with pytest.raises(QuotaExceededException):
        await tree_service.copy_nodes(OWNER, [big.id], small.id)
    assert await tree_service.list_children(OWNER, small.id) == []
    assert (await tree_service.get_usage(OWNER, small.id)).used == 0


async def test_copy_batch_with_duplicate_names_rejected(
    tree_service: TreeService,
    blob_storage: FakeBlobStorage,
    personal_root: RootVO,
) -> None:
    a = await tree_service.create_folder(OWNER, personal_root.id, "A")
    b = await tree_service.create_folder(OWNER, personal_root.id, "B")
    target = await tree_service.create_folder(OWNER, personal_root.id, "T")
    f1 = await tree_service.upload_file(OWNER, a.id, "n.txt", b"one")
    f2 = await tree_service.upload_file(OWNER, b.id, "n.txt", b"two")
    objects_before = set(blob_storage.objects)

    with pytest.raises(InvalidInputException, match="named n.txt"):
        await tree_service.copy_nodes(OWNER, [f1.id, f2.id], target.id, override=True)

    assert await tree_service.list_children(OWNER, target.id) == []
    assert set(blob_storage.objects) == objects_before
    assert (await tree_service.get_usage(OWNER, personal_root.id)).used == 6
