"""
Unit tests for the block store.

Tests:
- BlockId numeric encoding
- Node-local BlockManager semantics
- Location registry
"""

import pytest

from communication.block_store import (
    BlockId,
    BlockKind,
    BlockManager,
    BlockManagerMaster,
    StorageLevel,
    MEMORY_ONLY_SER,
    MEMORY_ONLY_SER_2,
)


class TestBlockId:
    """Test deterministic block keys"""

    def test_weight_encoding(self):
        assert BlockId.weight(0).to_numeric() == 10000
        assert BlockId.weight(3).to_numeric() == 10003

    def test_gradient_encoding(self):
        assert BlockId.gradient(0, 5).to_numeric() == 5
        assert BlockId.gradient(2, 5).to_numeric() == 5 + 2 * 10000 * 10

    def test_custom_cluster_size(self):
        assert BlockId.weight(7).to_numeric(100) == 107
        assert BlockId.gradient(1, 7).to_numeric(100) == 1007

    def test_injective_below_cluster_size(self):
        """No two ids collide while worker ids stay below the bound"""
        bound = 12
        ids = [BlockId.weight(owner) for owner in range(bound)]
        ids += [BlockId.gradient(s, r) for s in range(bound) for r in range(bound)]

        numeric = [block_id.to_numeric(bound) for block_id in ids]

        assert len(set(numeric)) == len(ids)

    def test_from_numeric_inverts_encoding(self):
        bound = 50
        for block_id in [BlockId.weight(0), BlockId.weight(49),
                         BlockId.gradient(0, 0), BlockId.gradient(49, 49), BlockId.gradient(3, 17)]:
            assert BlockId.from_numeric(block_id.to_numeric(bound), bound) == block_id

    def test_from_numeric_rejects_gaps(self):
        """Values between the weight range and the first sender's range are not ids"""
        with pytest.raises(ValueError):
            BlockId.from_numeric(5 * 100, 100)

    def test_from_numeric_negative(self):
        with pytest.raises(ValueError):
            BlockId.from_numeric(-1)

    def test_worker_id_out_of_range(self):
        with pytest.raises(ValueError):
            BlockId.weight(100).to_numeric(100)
        with pytest.raises(ValueError):
            BlockId.gradient(0, 100).to_numeric(100)

    def test_gradient_requires_receiver(self):
        with pytest.raises(ValueError):
            BlockId(BlockKind.GRADIENT, 1)

    def test_weight_rejects_receiver(self):
        with pytest.raises(ValueError):
            BlockId(BlockKind.WEIGHT, 1, 2)

    def test_str(self):
        assert str(BlockId.weight(4)) == "weight_4"
        assert str(BlockId.gradient(1, 2)) == "gradient_1_2"

    def test_hashable(self):
        assert {BlockId.weight(1), BlockId.weight(1)} == {BlockId.weight(1)}


class TestStorageLevel:
    """Test storage level constants"""

    def test_default_level(self):
        assert MEMORY_ONLY_SER.use_memory
        assert MEMORY_ONLY_SER.serialized
        assert MEMORY_ONLY_SER.replication == 1
        assert str(MEMORY_ONLY_SER) == "MEMORY_ONLY_SER"

    def test_replicated_level(self):
        assert MEMORY_ONLY_SER_2.replication == 2
        assert str(MEMORY_ONLY_SER_2) == "MEMORY_ONLY_SER_2"

    def test_equality(self):
        assert StorageLevel() == MEMORY_ONLY_SER


class TestBlockManager:
    """Test node-local block storage"""

    @pytest.fixture
    def manager(self):
        return BlockManager(node_id=0)

    def test_put_and_get(self, manager):
        manager.put_bytes(1, b'abcd')

        assert bytes(manager.get_local(1)) == b'abcd'
        assert manager.get_bytes(1) == b'abcd'
        assert manager.contains(1)
        assert len(manager) == 1

    def test_missing_block(self, manager):
        assert manager.get_local(1) is None
        assert manager.get_bytes(1) is None
        assert not manager.contains(1)

    def test_last_writer_wins(self, manager):
        """A second put under the same id replaces the first"""
        manager.put_bytes(1, b'old')
        manager.put_bytes(1, b'new')

        assert manager.get_bytes(1) == b'new'
        assert len(manager) == 1

    def test_put_none(self, manager):
        with pytest.raises(ValueError, match="Bytes is null"):
            manager.put_bytes(1, None)

    def test_put_copies_mutable_input(self, manager):
        """Stored payloads do not follow later writes to the caller's buffer"""
        buffer = bytearray(b'1234')
        manager.put_bytes(1, memoryview(buffer))
        buffer[:] = b'0000'

        assert manager.get_bytes(1) == b'1234'

    def test_read_locks(self, manager):
        """get_local takes a read lock that unlock releases"""
        manager.put_bytes(1, b'data')

        manager.get_local(1)
        manager.get_local(1)
        assert manager.read_lock_count(1) == 2

        manager.unlock(1)
        manager.unlock(1)
        assert manager.read_lock_count(1) == 0

    def test_unlock_without_lock_is_noop(self, manager):
        manager.put_bytes(1, b'data')

        manager.unlock(1)
        manager.unlock(99)

        assert manager.read_lock_count(1) == 0

    def test_view_survives_replacement(self, manager):
        """A reader holding a view still sees the old payload"""
        manager.put_bytes(1, b'old!')
        view = manager.get_local(1)

        manager.put_bytes(1, b'new!')

        assert bytes(view) == b'old!'
        assert manager.read_lock_count(1) == 0

    def test_stale_unlock_keeps_new_readers_lock(self, manager):
        """Releasing a view of a replaced payload leaves the new payload's lock alone"""
        manager.put_bytes(1, b'old!')
        old_view = manager.get_local(1)

        manager.put_bytes(1, b'new!')
        new_view = manager.get_local(1)

        manager.unlock(1, old_view)
        assert manager.read_lock_count(1) == 1

        manager.unlock(1, new_view)
        assert manager.read_lock_count(1) == 0

    def test_identical_payload_is_a_new_generation(self, manager):
        """Republishing the same bytes object still starts a fresh lock count"""
        payload = b'same'
        manager.put_bytes(1, payload)
        old_view = manager.get_local(1)

        manager.put_bytes(1, payload)
        manager.get_local(1)
        manager.unlock(1, old_view)

        assert manager.read_lock_count(1) == 1

    def test_unlock_with_foreign_bytes_is_noop(self, manager):
        """Bytes fetched from another node never release a local lock"""
        manager.put_bytes(1, b'data')
        manager.get_local(1)

        manager.unlock(1, b'data')

        assert manager.read_lock_count(1) == 1

    def test_remove(self, manager):
        manager.put_bytes(1, b'x')

        assert manager.remove(1)
        assert not manager.remove(1)
        assert len(manager) == 0

    def test_block_ids_and_clear(self, manager):
        manager.put_bytes(3, b'c')
        manager.put_bytes(1, b'a')

        assert manager.block_ids() == [1, 3]

        manager.clear()
        assert manager.block_ids() == []


class TestBlockManagerMaster:
    """Test location registry"""

    def test_set_and_get_location(self):
        master = BlockManagerMaster()
        master.set_location(10, 2)

        assert master.get_locations(10) == [2]

    def test_replace_location(self):
        """A republished block is only found on its latest writer"""
        master = BlockManagerMaster()
        master.set_location(10, 2)
        master.set_location(10, 0)

        assert master.get_locations(10) == [0]

    def test_add_replica_location(self):
        master = BlockManagerMaster()
        master.set_location(10, 2)
        master.set_location(10, 0, replace=False)

        assert master.get_locations(10) == [0, 2]

    def test_unknown_block(self):
        assert BlockManagerMaster().get_locations(10) == []

    def test_remove_block(self):
        master = BlockManagerMaster()
        master.set_location(10, 1)
        master.remove_block(10)

        assert master.get_locations(10) == []
