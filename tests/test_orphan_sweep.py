"""
Tests for the orphan file sweep.
"""

import asyncio
import random

import pytest

from wardrobe_sync.jobs.models import UploadKind
from wardrobe_sync.storage.local_files import ManagedDirs
from wardrobe_sync.storage.orphan_sweep import OrphanSweeper, collect_protected_uris
from wardrobe_sync.storage.recent_uris import RecentUriGuard

DIRS = ManagedDirs("/docs")
WARDROBE_DIR = DIRS.dir_for(UploadKind.WARDROBE)
SCAN_DIR = DIRS.dir_for(UploadKind.SCAN)


@pytest.fixture
def sweeper(fs):
    return OrphanSweeper(fs, DIRS)


def test_deletes_true_orphans_only(fs, sweeper):
    keep = fs.add_file(f"{WARDROBE_DIR}keep.jpg")
    fs.add_file(f"{WARDROBE_DIR}orphan1.jpg")
    fs.add_file(f"{WARDROBE_DIR}orphan2.jpg")
    fs.dirs.add(WARDROBE_DIR)

    deleted = asyncio.run(sweeper.sweep({keep}, UploadKind.WARDROBE))

    assert deleted == 2
    assert set(fs.files) == {keep}


def test_only_touches_kind_directory(fs, sweeper):
    scan_file = fs.add_file(f"{SCAN_DIR}check-1.jpg")
    fs.add_file(f"{WARDROBE_DIR}orphan.jpg")
    fs.dirs.add(WARDROBE_DIR)

    deleted = asyncio.run(sweeper.sweep(set(), UploadKind.WARDROBE))

    assert deleted == 1
    assert scan_file in fs.files


def test_missing_directory_returns_zero(fs, sweeper):
    assert asyncio.run(sweeper.sweep(set(), UploadKind.SCAN)) == 0


def test_delete_failure_does_not_abort(fs, sweeper):
    stuck = fs.add_file(f"{WARDROBE_DIR}stuck.jpg")
    fs.add_file(f"{WARDROBE_DIR}orphan.jpg")
    fs.dirs.add(WARDROBE_DIR)
    fs.fail_delete.add(stuck)

    deleted = asyncio.run(sweeper.sweep(set(), UploadKind.WARDROBE))

    assert deleted == 1
    assert stuck in fs.files


def test_listing_failure_returns_zero(fs, sweeper):
    fs.dirs.add(WARDROBE_DIR)

    async def broken(_):
        raise OSError("permission denied")

    fs.read_directory = broken

    assert asyncio.run(sweeper.sweep(set(), UploadKind.WARDROBE)) == 0


def test_collect_protected_uris_unions_all_sources(queue, clock, request_factory):
    guard = RecentUriGuard(clock=clock)
    guard.track(f"{WARDROBE_DIR}fresh.jpg")
    asyncio.run(queue.enqueue(request_factory(id="p", local_path=f"{WARDROBE_DIR}pending.jpg")))
    asyncio.run(queue.enqueue(request_factory(id="s", kind=UploadKind.SCAN, local_path=f"{SCAN_DIR}s.jpg")))

    protected = collect_protected_uris(
        [f"{WARDROBE_DIR}db.jpg", None, ""], queue, guard, UploadKind.WARDROBE
    )

    assert protected == {
        f"{WARDROBE_DIR}db.jpg",
        f"{WARDROBE_DIR}pending.jpg",
        f"{WARDROBE_DIR}fresh.jpg",
    }


@pytest.mark.parametrize("seed", range(25))
def test_never_deletes_protected_files(seed, fs, queue, clock, request_factory):
    rng = random.Random(seed)
    names = [f"img-{i}.jpg" for i in range(rng.randint(0, 40))]
    for name in names:
        fs.add_file(f"{WARDROBE_DIR}{name}")
    fs.dirs.add(WARDROBE_DIR)

    db_uris = {f"{WARDROBE_DIR}{n}" for n in names if rng.random() < 0.3}
    # Referenced rows may point at files that no longer exist
    db_uris.add(f"{WARDROBE_DIR}missing.jpg")
    pending = [n for n in names if rng.random() < 0.2]
    guard = RecentUriGuard(clock=clock)
    for name in names:
        if rng.random() < 0.2:
            guard.track(f"{WARDROBE_DIR}{name}")

    async def scenario():
        for i, name in enumerate(pending):
            await queue.enqueue(request_factory(id=f"job-{i}", local_path=f"{WARDROBE_DIR}{name}"))
        protected = collect_protected_uris(db_uris, queue, guard, UploadKind.WARDROBE)
        deleted = await OrphanSweeper(fs, DIRS).sweep(protected, UploadKind.WARDROBE)
        return protected, deleted

    protected, deleted = asyncio.run(scenario())

    on_disk = {f"{WARDROBE_DIR}{n}" for n in names}
    expected_orphans = on_disk - protected
    assert deleted == len(expected_orphans)
    assert set(fs.files) == on_disk & protected


def test_unknown_kind_returns_zero(fs, sweeper):
    fs.add_file(f"{WARDROBE_DIR}a.jpg")
    fs.dirs.add(WARDROBE_DIR)

    assert asyncio.run(sweeper.sweep(set(), "outfit")) == 0
    assert f"{WARDROBE_DIR}a.jpg" in fs.files
