#!/usr/bin/env python3

# ============================================================================
# SPLIT A MULTI-LABEL VOLUME INTO ONE BINARY MASK PER LABEL (FSL)
#
# For every integer label k present in the input image's intensity range,
# writes <out_prefix>_<k> containing 1 where the input equals k and 0
# elsewhere. Labels with no voxels are removed unless --keep-empty is given.
# Output format follows $FSLOUTPUTTYPE (NIFTI_GZ by default).
#
# Usage:
#   python split_labels.py aseg.nii.gz masks/aseg [--min-label 1] \
#     [--max-label 255] [--keep-empty] [--log-file split.log]
#
# Author: recon-batch-orchestrator contributors
# Version: 1.0
# Last updated: 10/19/26
# ============================================================================

import os
import sys
import glob as globmod
import shutil
import argparse
import subprocess

import numpy as np

from recon_batch_utils import OrchestratorError, setup_logging


_IMAGE_EXTENSIONS = (".nii.gz", ".nii", ".hdr", ".img", ".hdr.gz", ".img.gz")


def verify_fsl_installation(logger):
    """Verify that fslmaths and fslstats are on PATH."""
    missing = [tool for tool in ("fslmaths", "fslstats") if shutil.which(tool) is None]
    if missing:
        raise OrchestratorError(
            f"FSL tool(s) not found on PATH: {', '.join(missing)}. Please install "
            f"FSL and source $FSLDIR/etc/fslconf/fsl.sh."
        )
    logger.info("FSL found: %s", os.path.dirname(shutil.which("fslmaths")))


def _fslstats(image, option, logger):
    """Run 'fslstats <image> <option>' and return the values as a float array."""
    try:
        result = subprocess.run(
            ["fslstats", image, option],
            capture_output=True, text=True, check=True,
        )
    except subprocess.CalledProcessError as e:
        raise OrchestratorError(
            f"fslstats {option} failed for {image}: {e.stderr.strip() if e.stderr else str(e)}"
        )
    try:
        values = np.array(result.stdout.split(), dtype=float)
    except ValueError:
        raise OrchestratorError(
            f"Unexpected fslstats {option} output for {image}: {result.stdout.strip()!r}"
        )
    logger.debug("fslstats %s %s -> %s", image, option, values)
    return values


def label_range(image, logger, min_label=None, max_label=None):
    """
    Integer labels to extract from an image.

    The range comes from 'fslstats -R' (min/max). Background (0) and
    negative values are never included.

    Returns
    -------
    numpy.ndarray of int
    """
    rng = _fslstats(image, "-R", logger)
    if rng.size < 2:
        raise OrchestratorError(f"fslstats -R returned no range for {image}")

    lo = int(np.ceil(rng[0]))
    hi = int(np.floor(rng[1]))
    if min_label is not None:
        lo = max(lo, int(min_label))
    if max_label is not None:
        hi = min(hi, int(max_label))
    lo = max(lo, 1)

    if hi < lo:
        return np.array([], dtype=int)
    return np.arange(lo, hi + 1, dtype=int)


def _output_files(out_path):
    return [
        p for p in globmod.glob(out_path + ".*")
        if p.endswith(_IMAGE_EXTENSIONS)
    ]


def extract_label(image, label, out_path, logger):
    """
    Write a binary mask of one label with fslmaths and return its voxel count.
    """
    cmd = [
        "fslmaths", image,
        "-thr", str(label),
        "-uthr", str(label),
        "-bin", out_path,
    ]
    try:
        subprocess.run(cmd, capture_output=True, text=True, check=True)
    except subprocess.CalledProcessError as e:
        raise OrchestratorError(
            f"fslmaths failed for label {label} of {image}: "
            f"{e.stderr.strip() if e.stderr else str(e)}"
        )

    # -V prints "<voxels> <volume mm3>"
    counts = _fslstats(out_path, "-V", logger)
    if counts.size == 0:
        raise OrchestratorError(f"fslstats -V returned no voxel count for {out_path}")
    return int(counts[0])


def split_labels(image, out_prefix, logger, min_label=None, max_label=None, keep_empty=False):
    """
    Split a multi-label image into one binary mask per integer label.

    Parameters
    ----------
    image : str
        Input label volume (any format FSL reads).
    out_prefix : str
        Output path prefix; masks are written as <out_prefix>_<label>.
    logger : logging.Logger
    min_label, max_label : int or None
        Optional bounds on the labels to extract.
    keep_empty : bool
        Keep masks for labels with zero voxels.

    Returns
    -------
    dict
        label (int) -> output path without extension, for every mask kept.
    """
    if not os.path.exists(image) and not _output_files(image):
        raise OrchestratorError(f"Input image not found: {image}")

    out_dir = os.path.dirname(os.path.abspath(out_prefix))
    os.makedirs(out_dir, exist_ok=True)

    labels = label_range(image, logger, min_label=min_label, max_label=max_label)
    if labels.size == 0:
        logger.warning("No labels in range for %s", image)
        return {}

    logger.info(
        "Splitting %s into up to %d label mask(s) (%d..%d)",
        image, labels.size, labels[0], labels[-1]
    )

    written = {}
    n_empty = 0
    for label in labels:
        out_path = f"{out_prefix}_{label}"
        n_voxels = extract_label(image, label, out_path, logger)
        if n_voxels == 0 and not keep_empty:
            for path in _output_files(out_path):
                os.remove(path)
            n_empty += 1
            logger.debug("Label %d is empty - removed %s", label, out_path)
            continue
        written[int(label)] = out_path
        logger.debug("Label %d: %d voxel(s) -> %s", label, n_voxels, out_path)

    logger.info(
        "Wrote %d label mask(s), %d empty label(s) %s",
        len(written), n_empty, "kept" if keep_empty else "skipped"
    )
    return written


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Split a multi-label image into one binary mask per label (FSL)."
    )
    parser.add_argument("image", help="Input label image.")
    parser.add_argument("out_prefix", help="Output prefix; masks are <out_prefix>_<label>.")
    parser.add_argument(
        "--min-label", type=int, default=None,
        help="Lowest label to extract (default: image minimum, at least 1)."
    )
    parser.add_argument(
        "--max-label", type=int, default=None,
        help="Highest label to extract (default: image maximum)."
    )
    parser.add_argument(
        "--keep-empty", action="store_true",
        help="Keep masks of labels that have no voxels."
    )
    parser.add_argument(
        "--log-file", type=str, default=None,
        help="Optional path to a log file."
    )
    args = parser.parse_args(argv)

    logger = setup_logging("split_labels", log_file=args.log_file)

    try:
        verify_fsl_installation(logger)
        split_labels(
            args.image, args.out_prefix, logger,
            min_label=args.min_label,
            max_label=args.max_label,
            keep_empty=args.keep_empty,
        )
    except OrchestratorError as e:
        logger.error("Fatal: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
