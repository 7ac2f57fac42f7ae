import os
import shutil
import subprocess

import requests

from esk_builder import log
from esk_builder.errors import ExternalToolFailure, InvalidConfiguration

dl_headers = {
    "User-Agent": "ESK Kernel Builder",
    "Accept-Encoding": "identity",
}


def run_cmd(args, cwd=None, stdin=None, input=None, env=None, capture=True):
    """
    Run an external tool and wait for it

    Args:
        args: argument list
        cwd: working directory (optional)
        stdin: open file handle fed to the tool (optional)
        input: text fed to the tool (optional)
        env: environment for the tool (optional)
        capture: keep stdout/stderr and copy them into the build log

    Returns:
        Captured stdout

    Raises:
        ExternalToolFailure: the tool is missing or exited non-zero
    """
    command = " ".join(str(a) for a in args)
    if cwd:
        log.info("Running: '%s' in '%s'" % (command, cwd))
    else:
        log.info("Running: '%s'" % command)

    try:
        result = subprocess.run(
            [str(a) for a in args],
            cwd=cwd,
            stdin=stdin,
            input=input,
            env=env,
            capture_output=capture,
            text=True,
        )
    except OSError as e:
        raise ExternalToolFailure("Cannot run '%s': %s" % (command, e))

    if capture:
        log.output(result.stdout)
        log.output(result.stderr)

    if result.returncode != 0:
        output = ((result.stdout or "") + (result.stderr or "")).strip() if capture else ""
        raise ExternalToolFailure(
            "Command failed (exit %d): '%s'" % (result.returncode, command),
            returncode=result.returncode,
            output=output,
        )
    return result.stdout if capture else ""


def parse_source(source):
    # host:owner/repo@ref
    try:
        host, rest = source.split(":", 1)
        repo, ref = rest.rsplit("@", 1)
    except (AttributeError, ValueError):
        raise InvalidConfiguration("Invalid source '%s' (expected host:owner/repo@ref)" % source)
    if not host or not repo or not ref:
        raise InvalidConfiguration("Invalid source '%s' (expected host:owner/repo@ref)" % source)
    return host, repo, ref


def git_clone(source, dest):
    """Shallow, single branch clone of host:owner/repo@ref into dest"""
    host, repo, ref = parse_source(source)
    log.info("Clone: %s -> %s" % (source, dest))
    run_cmd(
        [
            "git", "clone", "-q", "--depth=1", "--single-branch", "--no-tags",
            "https://%s/%s" % (host, repo), "-b", ref, dest,
        ]
    )
    return dest


def fetch_script(url):
    try:
        u = requests.get(url, headers=dl_headers, timeout=60)
        u.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise ExternalToolFailure("Cannot fetch %s: %s" % (url, e))
    return u.text


def run_installer(url, args=(), cwd=None):
    # Same as: curl -LSs <url> | bash -s <args>
    log.info("Running installer: %s %s" % (url, " ".join(args)))
    script = fetch_script(url)
    return run_cmd(["bash", "-s"] + list(args), cwd=cwd, input=script)


def reset_dir(path):
    if os.path.isdir(path):
        shutil.rmtree(path)
    elif os.path.exists(path):
        os.remove(path)
    os.makedirs(path)


def reset_dirs(paths):
    log.info("Reset directories: %s" % " ".join(paths))
    for path in paths:
        reset_dir(path)


def copytree(src, dst):
    # cp -R src/* dst
    log.info("Copying: %s -> %s" % (src, dst))
    if not os.path.isdir(src):
        return False
    shutil.copytree(src, dst, dirs_exist_ok=True)
    return True
