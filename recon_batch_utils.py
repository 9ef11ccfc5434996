#!/usr/bin/env python3

# ============================================================================
# BATCH UTILITIES FOR FREESURFER RECON-ALL ORCHESTRATION
# Helper functions for the resumable, lock-coordinated subject batch.
# Called by orchestrate_recon_all.py and run_recon_batch.py.
#
# Several orchestrator instances may run at once over the same subject list.
# They coordinate only through the shared filesystem: one lock file per job
# (exclusive create) and an append-only completion ledger.
#
# Author: recon-batch-orchestrator contributors
# Version: 1.0
# Last updated: 10/19/26
# ============================================================================

import os
import sys
import json
import time
import shutil
import socket
import getpass
import logging
import subprocess
from collections import namedtuple
from datetime import datetime

import yaml
import pandas as pd


class OrchestratorError(Exception):
    """Raised for unrecoverable orchestrator errors."""
    pass


# Per-job outcome of one execution attempt
ExecutionResult = namedtuple("ExecutionResult", ["success", "reason"])

# Classification of one subject at the end of a batch
JobOutcome = namedtuple(
    "JobOutcome", ["subject", "job_name", "status", "elapsed_seconds", "reason"]
)

STATUS_EXECUTED = "executed"
STATUS_FAILED = "failed"
STATUS_SKIPPED_COMPLETE = "skipped_complete"
STATUS_SKIPPED_IN_PROGRESS = "skipped_in_progress"

RAW_FORMATS = ("dcm", "nii", "nii.gz", "mgz")

LEDGER_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


# ============================================================================
# Section A: Logging
# ============================================================================

def setup_logging(name, log_file=None, verbose=False):
    """
    Configure a named logger writing to stdout and, optionally, a file.

    Existing handlers on the logger are replaced so repeated calls in the same
    process do not duplicate output.

    Parameters
    ----------
    name : str
        Logger name (usually the script name).
    log_file : str or None
        Optional path to a log file. Parent directories are created.
    verbose : bool
        If True, log at DEBUG level.

    Returns
    -------
    logging.Logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        log_dir = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(log_dir, exist_ok=True)
        fh = logging.FileHandler(log_file)
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    return logger


def format_elapsed(seconds):
    """Format a duration as 'Hh MMm SSs'."""
    hours, rem = divmod(int(round(seconds)), 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours}h {minutes:02d}m {secs:02d}s"


# ============================================================================
# Section B: Subject List
# ============================================================================

def validate_subject_id(sub_id, context=None):
    """
    Check that a subject ID is usable as a single directory name.

    Subject IDs become the names of the subject directory, the working copy
    and the lock file, so they must not be empty, '.' or '..', must not
    contain path separators and must not start with '-' (recon-all would read
    it as a flag).

    Parameters
    ----------
    sub_id : str
    context : str or None
        Where the ID came from, included in the error message.

    Returns
    -------
    str
        The ID, unchanged.

    Raises
    ------
    OrchestratorError
        If the ID is not valid.
    """
    problem = None
    if not sub_id or not sub_id.strip():
        problem = "IDs must not be empty"
    elif sub_id in (".", ".."):
        problem = "'.' and '..' are not subject IDs"
    elif os.sep in sub_id or (os.altsep and os.altsep in sub_id):
        problem = "IDs must not contain path separators"
    elif sub_id.startswith("-"):
        problem = "IDs must not start with '-'"
    elif sub_id != sub_id.strip() or len(sub_id.split()) > 1:
        problem = "IDs must not contain whitespace"

    if problem:
        where = f" {context}" if context else ""
        raise OrchestratorError(f"Invalid subject ID{where}: '{sub_id}' ({problem}).")
    return sub_id


def parse_subject_list(path, logger):
    """
    Parse a plain-text subject list file.

    Blank lines and '#'-prefixed lines are ignored. Duplicate IDs produce a
    warning and are skipped.

    Parameters
    ----------
    path : str
        Path to the subject list file.
    logger : logging.Logger

    Returns
    -------
    list of str
        Ordered list of unique subject IDs.

    Raises
    ------
    OrchestratorError
        If the file is missing or an ID is not valid (see validate_subject_id).
    """
    if not os.path.isfile(path):
        raise OrchestratorError(f"Subject list not found: {path}")

    sub_ids, seen = [], set()

    with open(path) as f:
        for lineno, line in enumerate(f, start=1):
            s = line.strip()
            if not s or s.startswith("#"):
                continue
            validate_subject_id(s, f"on line {lineno} of {path}")
            if s in seen:
                logger.warning(
                    "Duplicate subject ID on line %d: '%s' - skipping.", lineno, s
                )
                continue
            seen.add(s)
            sub_ids.append(s)

    return sub_ids


def initialize_subject_list(list_path, raw_dir, logger):
    """
    Read the subject list, or build it from the raw-data directory.

    If list_path exists it is parsed as-is. Otherwise every non-hidden entry
    of raw_dir becomes one subject ID (sorted by name) and the list is
    written to list_path for later runs.

    Parameters
    ----------
    list_path : str
    raw_dir : str or None
        Raw-data directory; only required when list_path does not exist.
    logger : logging.Logger

    Returns
    -------
    list of str
    """
    if os.path.isfile(list_path):
        sub_ids = parse_subject_list(list_path, logger)
        logger.info("Read %d subject(s) from %s", len(sub_ids), list_path)
        return sub_ids

    if not raw_dir:
        raise OrchestratorError(
            f"Subject list {list_path} does not exist and no raw-data "
            f"directory was given to build it from."
        )
    if not os.path.isdir(raw_dir):
        raise OrchestratorError(f"Raw-data directory not found: {raw_dir}")

    try:
        entries = sorted(os.listdir(raw_dir))
    except OSError as e:
        raise OrchestratorError(f"Cannot read raw-data directory {raw_dir}: {e}")

    sub_ids = []
    for entry in entries:
        if entry.startswith("."):
            continue
        sub_id = validate_subject_id(_strip_raw_extension(entry), f"in {raw_dir}")
        if sub_id not in sub_ids:
            sub_ids.append(sub_id)

    list_dir = os.path.dirname(os.path.abspath(list_path))
    os.makedirs(list_dir, exist_ok=True)
    with open(list_path, "w") as f:
        for sub_id in sub_ids:
            f.write(sub_id + "\n")

    logger.info(
        "Subject list created from %s: %s (%d subject(s))",
        raw_dir, list_path, len(sub_ids)
    )
    return sub_ids


def _strip_raw_extension(entry):
    for ext in (".nii.gz", ".nii", ".mgz"):
        if entry.endswith(ext):
            return entry[: -len(ext)]
    return entry


# ============================================================================
# Section C: Completion Ledger
# ============================================================================

class CompletionLedger:
    """
    Append-only text record of completed jobs.

    One line per completed job, tab-separated:

        <job name>  <YYYY-MM-DD HH:MM:SS>  <Hh MMm SSs>  <user>

    Membership is decided by an exact match on the first whitespace-delimited
    token, so 'sub1' never matches a line for 'sub10'. Lines are never
    rewritten or removed.
    """

    def __init__(self, path):
        self.path = path

    def ensure_exists(self, logger):
        """
        Create an empty ledger if none exists.

        Returns
        -------
        bool
            True if the ledger was created by this call.
        """
        if os.path.isfile(self.path):
            return False
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        # 'a' keeps a ledger created concurrently by another instance
        with open(self.path, "a"):
            pass
        logger.info(
            "Completion ledger created: %s (no subjects have completed for "
            "this subject list yet)", self.path
        )
        return True

    def completed_names(self):
        """Return the set of job names that have a ledger line."""
        names = set()
        if not os.path.isfile(self.path):
            return names
        with open(self.path, errors="replace") as f:
            for line in f:
                fields = line.split()
                if fields:
                    names.add(fields[0])
        return names

    def contains(self, job_name):
        if not os.path.isfile(self.path):
            return False
        with open(self.path, errors="replace") as f:
            for line in f:
                fields = line.split(None, 1)
                if fields and fields[0] == job_name:
                    return True
        return False

    def record(self, job_name, elapsed_seconds, completed_at=None, user=None):
        """
        Append one completion line for job_name unless it is already present.

        The line is written with a single append-mode write so concurrent
        instances never lose each other's updates.

        Returns
        -------
        bool
            True if a line was appended, False if job_name was already recorded.
        """
        if self.contains(job_name):
            return False
        completed_at = completed_at or datetime.now()
        user = user or _current_user()
        line = "\t".join([
            job_name,
            completed_at.strftime(LEDGER_TIME_FORMAT),
            format_elapsed(elapsed_seconds),
            user,
        ]) + "\n"
        fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o664)
        try:
            os.write(fd, line.encode())
        finally:
            os.close(fd)
        return True


def _current_user():
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return str(os.getuid()) if hasattr(os, "getuid") else "unknown"


_ELAPSED_RE = r"(?P<h>\d+)h\s+(?P<m>\d+)m\s+(?P<s>\d+)s"


def read_ledger_table(ledger_path):
    """
    Load the completion ledger into a DataFrame.

    Lines with missing trailing fields are kept with NaN values. When a job
    name appears more than once, the first line wins. Bytes that are not
    valid UTF-8 are replaced rather than treated as an error.

    Returns
    -------
    pandas.DataFrame
        Columns: job_name, completed_at, elapsed, elapsed_seconds, user.
    """
    columns = ["job_name", "completed_at", "elapsed", "user"]
    rows = []
    if os.path.isfile(ledger_path):
        with open(ledger_path, errors="replace") as f:
            for line in f:
                line = line.rstrip("\n")
                if not line.strip():
                    continue
                # Same key as CompletionLedger.contains: first whitespace token
                fields = line.split(None, 1)[:1]
                if "\t" in line:
                    fields += line.split("\t")[1:]
                fields = (fields + [None] * len(columns))[: len(columns)]
                rows.append(fields)

    df = pd.DataFrame(rows, columns=columns)
    df = df.drop_duplicates(subset="job_name", keep="first").reset_index(drop=True)
    df["completed_at"] = pd.to_datetime(
        df["completed_at"], format=LEDGER_TIME_FORMAT, errors="coerce"
    )
    parts = df["elapsed"].fillna("").astype(str).str.extract(_ELAPSED_RE).astype(float)
    df["elapsed_seconds"] = parts["h"] * 3600 + parts["m"] * 60 + parts["s"]
    return df[["job_name", "completed_at", "elapsed", "elapsed_seconds", "user"]]


# ============================================================================
# Section D: Job Locks
# ============================================================================

def lock_path_for(lock_dir, job_name):
    """Deterministic lock file path for one job."""
    return os.path.join(lock_dir, f"{job_name}.recon.lock")


class JobLock:
    """
    Exclusive per-job marker file.

    acquire() uses an atomic exclusive create, so two instances racing for the
    same job cannot both succeed. The lock body is informational JSON (pid,
    host, user, start time); only the file's existence carries meaning.

    Used as a context manager after a successful acquire() so the marker is
    removed on every exit path of the job.
    """

    def __init__(self, lock_dir, job_name, stale_after_hours=None):
        self.lock_dir = lock_dir
        self.job_name = job_name
        self.path = lock_path_for(lock_dir, job_name)
        self.stale_after_hours = stale_after_hours
        self.held = False
        self._logger = logging.getLogger(__name__)

    def exists(self):
        return os.path.exists(self.path)

    def acquire(self, logger):
        """
        Try to claim the job without waiting.

        Returns
        -------
        bool
            True if this instance now owns the lock, False if another
            instance holds it.
        """
        self._logger = logger
        os.makedirs(self.lock_dir, exist_ok=True)
        if self._try_create():
            return True

        if self.stale_after_hours is None:
            return False
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            # Released between our create attempt and the stat
            return self._try_create()
        if not self._is_stale(st):
            return False

        logger.warning(
            "Reclaiming stale lock for %s (%.1f h old, limit %.1f h): %s",
            self.job_name, (time.time() - st.st_mtime) / 3600.0,
            self.stale_after_hours, self.path
        )
        if not self._remove_if_unchanged(st, logger):
            return False
        return self._try_create()

    def _remove_if_unchanged(self, st, logger):
        """
        Remove the lock file only if it is still the stale file judged by st.

        The file is first renamed to a name private to this process, so no
        other instance can replace or remove it while it is checked. If it
        turns out to be a different file (another instance reclaimed the job
        in the meantime), it is linked back under the lock name.

        Returns
        -------
        bool
            True if the stale lock was removed.
        """
        private = f"{self.path}.reclaim.{os.getpid()}"
        try:
            os.rename(self.path, private)
        except FileNotFoundError:
            # Someone else already moved it; whatever is there now is theirs
            return False

        try:
            current = os.stat(private)
            if (current.st_ino == st.st_ino and current.st_dev == st.st_dev
                    and self._is_stale(current)):
                return True
            logger.info(
                "Lock for %s was reclaimed by another instance - leaving it.",
                self.job_name
            )
            try:
                os.link(private, self.path)
            except FileExistsError:
                pass
            return False
        finally:
            try:
                os.remove(private)
            except FileNotFoundError:
                pass

    def release(self, logger):
        if not self.held:
            return
        try:
            os.remove(self.path)
            logger.debug("Released lock: %s", self.path)
        except FileNotFoundError:
            logger.warning("Lock already removed by another process: %s", self.path)
        self.held = False

    def _is_stale(self, st):
        return time.time() - st.st_mtime > self.stale_after_hours * 3600

    def _try_create(self):
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o664)
        except FileExistsError:
            return False
        body = {
            "job_name": self.job_name,
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "user": _current_user(),
            "start_time": datetime.now().strftime(LEDGER_TIME_FORMAT),
        }
        try:
            os.write(fd, json.dumps(body, indent=2).encode())
        finally:
            os.close(fd)
        self.held = True
        return True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release(self._logger)
        return False


# ============================================================================
# Section E: Local-Run Staging
# ============================================================================

def stage_working_copy(subjects_dir, tmp_dir, job_name, logger):
    """
    Copy a subject directory into the local temporary subjects directory.

    Nothing is copied if the subject does not exist yet (it will be imported
    directly into tmp_dir) or if a working copy is already present.

    Returns
    -------
    str
        Path to the working copy.
    """
    src = os.path.join(subjects_dir, job_name)
    dst = os.path.join(tmp_dir, job_name)
    os.makedirs(tmp_dir, exist_ok=True)

    if os.path.isdir(dst):
        logger.info("Working copy already present: %s", dst)
    elif os.path.isdir(src):
        logger.info("Staging %s -> %s", src, dst)
        shutil.copytree(src, dst, symlinks=True)
    else:
        logger.info("No existing subject directory to stage for %s", job_name)
    return dst


def unstage_working_copy(subjects_dir, tmp_dir, job_name, logger):
    """Copy a working copy back to the subjects directory and delete it."""
    src = os.path.join(tmp_dir, job_name)
    dst = os.path.join(subjects_dir, job_name)

    if not os.path.isdir(src):
        logger.warning("No working copy to unstage for %s: %s", job_name, src)
        return

    logger.info("Copying results back %s -> %s", src, dst)
    shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)
    shutil.rmtree(src)
    logger.info("Removed working copy: %s", src)


# ============================================================================
# Section F: FreeSurfer
# ============================================================================

def verify_freesurfer_installation(logger):
    """
    Verify that FreeSurfer is installed and on PATH by running
    'recon-all -version'.
    """
    try:
        result = subprocess.run(
            ["recon-all", "-version"],
            capture_output=True, text=True, check=True,
        )
        logger.info("FreeSurfer version: %s", result.stdout.strip())
    except FileNotFoundError:
        raise OrchestratorError(
            "recon-all not found on PATH. Please install FreeSurfer and source "
            "$FREESURFER_HOME/SetUpFreeSurfer.sh."
        )
    except subprocess.CalledProcessError as e:
        raise OrchestratorError(
            f"FreeSurfer check failed: {e.stderr.strip() if e.stderr else str(e)}"
        )


def find_raw_inputs(raw_dir, sub_id, raw_format):
    """
    Locate the raw image(s) to import for one subject.

    For 'dcm' the first file (sorted) of <raw_dir>/<sub_id>/ is used; recon-all
    finds the rest of the series itself. For the volume formats every file
    with that extension is returned, so repeated scans are averaged. A single
    file <raw_dir>/<sub_id>.<ext> is also accepted.

    Returns
    -------
    list of str
    """
    if raw_format not in RAW_FORMATS:
        raise OrchestratorError(
            f"Unsupported raw format '{raw_format}'. Must be one of {RAW_FORMATS}."
        )

    sub_raw = os.path.join(raw_dir, sub_id)

    if os.path.isdir(sub_raw):
        files = sorted(
            f for f in os.listdir(sub_raw)
            if not f.startswith(".") and os.path.isfile(os.path.join(sub_raw, f))
        )
        if raw_format == "dcm":
            files = files[:1]
        elif raw_format == "nii":
            files = [f for f in files if f.endswith(".nii")]
        else:
            files = [f for f in files if f.endswith("." + raw_format)]
        if not files:
            raise OrchestratorError(
                f"No '{raw_format}' input found for {sub_id} in {sub_raw}"
            )
        return [os.path.join(sub_raw, f) for f in files]

    single = f"{sub_raw}.{raw_format}"
    if os.path.isfile(single):
        return [single]

    raise OrchestratorError(f"No raw data found for {sub_id} under {raw_dir}")


def import_subject(subjects_dir, job_name, inputs, logger):
    """
    Create the FreeSurfer subject directory from raw images.

    Skipped when <subjects_dir>/<job_name>/mri/orig/001.mgz already exists.

    Returns
    -------
    bool
        True if an import was performed.
    """
    orig = os.path.join(subjects_dir, job_name, "mri", "orig", "001.mgz")
    if os.path.isfile(orig):
        logger.info("Subject already imported: %s", orig)
        return False

    cmd = ["recon-all", "-subjid", job_name, "-sd", subjects_dir]
    for path in inputs:
        cmd.extend(["-i", path])

    logger.info("Importing %s from %d input file(s)", job_name, len(inputs))
    try:
        subprocess.run(
            cmd, capture_output=True, text=True, check=True,
            env=_freesurfer_env(subjects_dir),
        )
    except subprocess.CalledProcessError as e:
        raise OrchestratorError(
            f"recon-all import failed for {job_name}: "
            f"{_last_line(e.stderr) or _last_line(e.stdout) or str(e)}"
        )
    except FileNotFoundError:
        raise OrchestratorError("recon-all not found on PATH.")

    if not os.path.isfile(orig):
        raise OrchestratorError(f"recon-all import produced no output: {orig}")

    logger.info("Import complete: %s", orig)
    return True


def build_recon_all_command(subjects_dir, job_name, flags, openmp=None):
    cmd = ["recon-all", "-subjid", job_name, "-sd", subjects_dir] + list(flags)
    if openmp:
        cmd.extend(["-openmp", str(int(openmp))])
    return cmd


def run_recon_all(subjects_dir, job_name, flags, logger, log_path=None, openmp=None):
    """
    Run recon-all for one subject and report whether it succeeded.

    Output goes to log_path when given; otherwise it is captured and only the
    last error line is kept.

    Returns
    -------
    ExecutionResult
    """
    cmd = build_recon_all_command(subjects_dir, job_name, flags, openmp=openmp)
    logger.info("Running: %s", " ".join(cmd))

    try:
        if log_path:
            os.makedirs(os.path.dirname(os.path.abspath(log_path)), exist_ok=True)
            with open(log_path, "w") as log_f:
                result = subprocess.run(
                    cmd, stdout=log_f, stderr=subprocess.STDOUT, text=True,
                    env=_freesurfer_env(subjects_dir),
                )
        else:
            result = subprocess.run(
                cmd, capture_output=True, text=True,
                env=_freesurfer_env(subjects_dir),
            )
    except FileNotFoundError:
        return ExecutionResult(False, "recon-all not found on PATH")

    if result.returncode == 0:
        return ExecutionResult(True, "")

    if log_path:
        err_msg = f"Exit code {result.returncode} (see {log_path})"
    else:
        err_msg = (
            _last_line(result.stderr)
            or _last_line(result.stdout)
            or f"Exit code {result.returncode}"
        )
    return ExecutionResult(False, err_msg)


def _freesurfer_env(subjects_dir):
    env = os.environ.copy()
    env["SUBJECTS_DIR"] = subjects_dir
    return env


def _last_line(text):
    if not text:
        return ""
    lines = [ln for ln in text.splitlines() if ln.strip()]
    return lines[-1].strip() if lines else ""


# ============================================================================
# Section G: Config
# ============================================================================

_DEFAULT_CONFIG = {
    "study": {
        "subjects_dir": None,
        "raw_dir": None,
        "raw_format": "dcm",
        "subject_list": "subjects.txt",
        "ledger": "completed_subjects.txt",
        "lock_dir": None,
        "group": None,
    },
    "recon_all": {"flags": ["-all"], "openmp": None},
    "local_run": {"enabled": False, "tmp_dir": None},
    "locks": {"stale_after_hours": None},
    "logging": {"log_dir": None},
}


def load_batch_config(config_path, overrides, logger, environ=None):
    """
    Load the optional YAML config, apply CLI overrides and validate.

    Precedence: CLI override > YAML value > environment default > built-in.
    Relative subject_list, ledger and lock_dir paths are resolved against
    subjects_dir.

    Parameters
    ----------
    config_path : str or None
    overrides : dict
        {section: {key: value}}; None values are ignored.
    logger : logging.Logger
    environ : mapping or None
        Environment used for defaults (os.environ if None).

    Returns
    -------
    dict
        Validated config with absolute paths.
    """
    environ = os.environ if environ is None else environ
    config = {section: dict(values) for section, values in _DEFAULT_CONFIG.items()}

    if config_path:
        if not os.path.isfile(config_path):
            raise OrchestratorError(f"Batch config not found: {config_path}")
        with open(config_path, "r") as f:
            try:
                loaded = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise OrchestratorError(f"YAML parse error in {config_path}: {e}")
        if loaded is None:
            raise OrchestratorError(f"Config file is empty: {config_path}")
        if not isinstance(loaded, dict):
            raise OrchestratorError(f"Config root must be a mapping: {config_path}")
        for section, values in loaded.items():
            if section not in config:
                logger.warning("Unknown config section '%s' - ignored.", section)
                continue
            if not isinstance(values, dict):
                raise OrchestratorError(f"Config section '{section}' must be a mapping.")
            for key, value in values.items():
                if key not in config[section]:
                    logger.warning(
                        "Unknown config key '%s.%s' - ignored.", section, key
                    )
                    continue
                config[section][key] = value

    for section, values in (overrides or {}).items():
        for key, value in values.items():
            if value is not None:
                config[section][key] = value

    study = config["study"]
    if not study["subjects_dir"]:
        study["subjects_dir"] = environ.get("SUBJECTS_DIR")
    if not study["subjects_dir"]:
        raise OrchestratorError(
            "No subjects directory given (use --subjects-dir, study.subjects_dir "
            "or the SUBJECTS_DIR environment variable)."
        )
    study["subjects_dir"] = os.path.abspath(study["subjects_dir"])
    if not os.path.isdir(study["subjects_dir"]):
        raise OrchestratorError(f"Subjects directory not found: {study['subjects_dir']}")

    if study["raw_dir"]:
        study["raw_dir"] = os.path.abspath(study["raw_dir"])
        if not os.path.isdir(study["raw_dir"]):
            raise OrchestratorError(f"Raw-data directory not found: {study['raw_dir']}")

    if study["raw_format"] not in RAW_FORMATS:
        raise OrchestratorError(
            f"study.raw_format must be one of {RAW_FORMATS}, got '{study['raw_format']}'."
        )

    for key in ("subject_list", "ledger"):
        study[key] = os.path.join(study["subjects_dir"], study[key])
    if study["lock_dir"]:
        study["lock_dir"] = os.path.join(study["subjects_dir"], study["lock_dir"])
    else:
        study["lock_dir"] = study["subjects_dir"]

    group = study["group"]
    if group is not None:
        group = str(group)
        if (not group or group in (".", "..") or os.sep in group
                or (os.altsep and os.altsep in group) or len(group.split()) != 1
                or group != group.strip()):
            raise OrchestratorError(f"Invalid group tag: '{study['group']}'")
        study["group"] = group

    recon = config["recon_all"]
    if isinstance(recon["flags"], str):
        recon["flags"] = recon["flags"].split()
    if not isinstance(recon["flags"], list) or not recon["flags"]:
        raise OrchestratorError("recon_all.flags must be a non-empty list.")
    recon["flags"] = [str(flag) for flag in recon["flags"]]
    if recon["openmp"] is not None:
        if not isinstance(recon["openmp"], int) or recon["openmp"] <= 0:
            raise OrchestratorError(
                f"recon_all.openmp must be a positive integer, got: {recon['openmp']}"
            )

    local = config["local_run"]
    if local["enabled"]:
        tmp_dir = local["tmp_dir"] or environ.get("TMPDIR") or "/tmp"
        local["tmp_dir"] = os.path.abspath(tmp_dir)
        if os.path.abspath(local["tmp_dir"]) == study["subjects_dir"]:
            raise OrchestratorError(
                "local_run.tmp_dir must differ from the subjects directory."
            )

    stale = config["locks"]["stale_after_hours"]
    if stale is not None:
        if not isinstance(stale, (int, float)) or stale <= 0:
            raise OrchestratorError(
                f"locks.stale_after_hours must be a positive number, got: {stale}"
            )

    if config["logging"]["log_dir"]:
        config["logging"]["log_dir"] = os.path.abspath(config["logging"]["log_dir"])

    logger.info("Batch config validated successfully.")
    return config


# ============================================================================
# Section H: Status Report
# ============================================================================

def canonical_job_name(sub_id, group=None):
    """'<sub_id>-<group>', or sub_id alone without a group; both parts validated."""
    validate_subject_id(sub_id)
    if not group:
        return sub_id
    return validate_subject_id(f"{sub_id}-{group}", f"(group '{group}')")


def summarize_batch_status(job_names, ledger_path, lock_dir):
    """
    Report the status of every job in a subject list.

    A job is 'complete' when the ledger has a line for it, 'in_progress' when
    a lock file exists, and 'pending' otherwise.

    Returns
    -------
    pandas.DataFrame
        Columns: job_name, status, completed_at, elapsed_seconds, user.
    """
    ledger = read_ledger_table(ledger_path)
    jobs = pd.DataFrame({"job_name": list(job_names)})
    df = jobs.merge(
        ledger[["job_name", "completed_at", "elapsed_seconds", "user"]],
        on="job_name", how="left", indicator=True,
    )

    locked = df["job_name"].map(
        lambda name: os.path.exists(lock_path_for(lock_dir, name))
    ).astype(bool)
    df["status"] = "pending"
    df.loc[locked, "status"] = "in_progress"
    df.loc[df["_merge"] == "both", "status"] = "complete"
    return df[["job_name", "status", "completed_at", "elapsed_seconds", "user"]]
