import pytest
from sqlalchemy.dialects import postgresql

from foliage.server.db.models.node import NodeDO
from foliage.server.utils.paths import (
    child_path,
    decode_path,
    depth,
    descendants_clause,
    encode_path,
    is_descendant_of,
    parent_id,
    rebase,
    root_id,
)


def test_encode_decode() -> None:
    assert encode_path((1, 22, 333)) == "1.22.333"
    assert decode_path("1.22.333") == (1, 22, 333)
    assert decode_path(encode_path((7,))) == (7,)


def test_empty_path_rejected() -> None:
    with pytest.raises(ValueError):
        encode_path(())
    with pytest.raises(ValueError):
        decode_path("")


def test_is_descendant_of() -> None:
    assert is_descendant_of((1, 2, 3), (1, 2))
    assert is_descendant_of((1, 2, 3), (1,))
    # A node is never its own descendant
    assert not is_descendant_of((1, 2), (1, 2))
    assert not is_descendant_of((1,), (1, 2))
    assert not is_descendant_of((1, 3, 4), (1, 2))
    # Id prefixes are not path prefixes
    assert not is_descendant_of((1, 23), (1, 2))


def test_depth() -> None:
    assert depth((5,)) == 1
    assert depth((5, 6, 7)) == 3


def test_rebase() -> None:
    assert rebase((1, 2, 3, 4), (1, 2), (9, 8, 2)) == (9, 8, 2, 3, 4)
    assert rebase((1, 2), (1, 2), (5, 2)) == (5, 2)


def test_rebase_preserves_relative_depth() -> None:
    folder, descendant = (1, 2), (1, 2, 3, 4)
    new_folder = (7, 8, 2)
    moved = rebase(descendant, folder, new_folder)
    assert is_descendant_of(moved, new_folder)
    assert depth(moved) - depth(new_folder) == depth(descendant) - depth(folder)


def test_rebase_requires_prefix() -> None:
    with pytest.raises(ValueError):
        rebase((1, 3, 4), (1, 2), (5,))


def test_navigation_helpers() -> None:
    assert child_path((1, 2), 3) == (1, 2, 3)
    assert parent_id((1, 2, 3)) == 2
    assert parent_id((1,)) is None
    assert root_id((1, 2, 3)) == 1


def test_descendants_clause_is_prefix_match() -> None:
    clause = descendants_clause(NodeDO.path, (1, 2))
    sql = str(
        clause.compile(
            dialect=postgresql.dialect(), compile_kwargs={"literal_binds": True}
        )
    )
    assert "LIKE" in sql
    assert "'1.2.'" in sql
    assert "<" not in sql
    assert ">" not in sql
