import logging

import pytest


@pytest.fixture
def logger():
    log = logging.getLogger("recon_batch_tests")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def workspace(tmp_path):
    """A subjects directory, a lock directory and a ledger path under tmp_path."""
    subjects_dir = tmp_path / "subjects"
    subjects_dir.mkdir()
    return {
        "subjects_dir": str(subjects_dir),
        "lock_dir": str(subjects_dir),
        "ledger": str(subjects_dir / "completed_subjects.txt"),
    }
