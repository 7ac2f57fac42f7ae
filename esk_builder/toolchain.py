import os
import re
import sys
import tarfile
import time

import requests

from esk_builder import log
from esk_builder.errors import ExternalToolFailure
from esk_builder.tools import dl_headers, run_cmd

DEFAULT_REPO = "bachnxuan/aosp_clang_mirror"
DEFAULT_RETRIES = 3
DEFAULT_RETRY_DELAY = 5

RELEASES_API = "https://api.github.com/repos/{repo}/releases/latest"


def api_headers(token=None):
    headers = dict(dl_headers)
    headers["Accept"] = "application/vnd.github+json"
    if token:
        headers["Authorization"] = "Bearer " + token
    return headers


def latest_release_asset(repo, suffix, token=None):
    """URL of the first asset of the latest release whose name ends with suffix"""
    url = RELEASES_API.format(repo=repo)
    try:
        u = requests.get(url, headers=api_headers(token), timeout=60)
        u.raise_for_status()
        release = u.json()
    except (requests.exceptions.RequestException, ValueError) as e:
        raise ExternalToolFailure("Cannot query latest release of %s: %s" % (repo, e))

    for asset in release.get("assets", []):
        download_url = asset.get("browser_download_url", "")
        if download_url.endswith(suffix):
            return download_url
    raise ExternalToolFailure("No '%s' asset in the latest release of %s" % (suffix, repo))


def download(url, file_name):
    """Stream url into file_name, removing partial files on failure"""
    try:
        u = requests.get(url, stream=True, headers=dl_headers, timeout=60)
        u.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise ExternalToolFailure(str(e))

    if u.headers.get("Content-Length"):
        file_size = int(u.headers["Content-Length"])
        log.info("Downloading: %s (%s bytes) - %s" % (os.path.basename(file_name), file_size, url))
    else:
        file_size = 0
        log.info("Downloading: %s (unknown size) - %s" % (os.path.basename(file_name), url))

    is_tty = sys.stdout.isatty()
    try:
        with open(file_name, "wb") as f:
            dl_bytes = 0
            for chunk in u.iter_content(chunk_size=1024 * 1024):
                if not chunk:
                    continue   # Ignore empty chunks
                f.write(chunk)
                dl_bytes += len(chunk)
                if is_tty and file_size:
                    print("%10d  [%3.2f%%]\r" % (dl_bytes, dl_bytes * 100.0 / file_size), end="")
    except (requests.exceptions.RequestException, OSError) as e:
        # We should delete partially downloaded file so the next try doesn't skip it!
        if os.path.isfile(file_name):
            os.remove(file_name)
        raise ExternalToolFailure("Download of %s failed: %s" % (url, e))

    if is_tty and file_size:
        print()
    log.success("Download OK: {}".format(file_name))
    return file_name


def download_with_retries(url, file_name, retries=DEFAULT_RETRIES, delay=DEFAULT_RETRY_DELAY):
    for attempt in range(1, retries + 1):
        try:
            return download(url, file_name)
        except ExternalToolFailure as e:
            log.warn("Download attempt %d/%d failed: %s" % (attempt, retries, e))
            if attempt < retries:
                time.sleep(delay)
    raise ExternalToolFailure("Giving up on %s after %d attempts" % (url, retries))


def extract(archive, dest):
    log.info("Extracting '%s' to '%s'..." % (archive, dest))
    if not os.path.exists(dest):
        os.makedirs(dest)
    try:
        with tarfile.open(archive, "r:*") as tf:
            if hasattr(tarfile, "data_filter"):
                tf.extractall(dest, filter="data")
            else:
                tf.extractall(dest)
    except (tarfile.TarError, OSError) as e:
        raise ExternalToolFailure("Cannot extract %s: %s" % (archive, e))


def fetch_toolchain(config, dest, workspace, token=None):
    """
    Download and unpack the latest Clang release into dest

    Returns:
        Path of the toolchain bin directory
    """
    repo = config.get("repo", DEFAULT_REPO)
    retries = int(config.get("retries", DEFAULT_RETRIES))
    delay = int(config.get("retry_delay", DEFAULT_RETRY_DELAY))

    log.info("Fetch AOSP Clang toolchain: " + repo)
    url = latest_release_asset(repo, ".tar.gz", token)

    archive = os.path.join(workspace, "clang-archive")
    download_with_retries(url, archive, retries, delay)
    extract(archive, dest)
    os.remove(archive)

    clang_bin = os.path.join(dest, "bin")
    if not os.path.isfile(os.path.join(clang_bin, "clang")):
        raise ExternalToolFailure("clang not found in " + clang_bin)
    return clang_bin


def compiler_string(clang_bin):
    # "Android (1234, based on r530567) clang version 19.0.0 (https://...)"
    out = run_cmd([os.path.join(clang_bin, "clang"), "--version"])
    first = (out.splitlines() or [""])[0]
    first = re.sub(r"\(https.*", "", first)
    return first.replace(" version", "").strip()
