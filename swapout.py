#!/usr/bin/python3

### Push the memory of a running process out to swap.
### The process is moved into a throwaway memory cgroup with a very low
### limit, its RSS is polled until it has shrunk enough, and then the
### original limit is put back and the cgroup is removed again.

__version__ = "0.1.0"
__author__ = "Jerry Richardson"
__copyright__ = "Copyright 2025, Jerry Richardson"
__license__ = "GPL"
__maintainer__ = "Jerry Richardson"
__email__ = "jerry@jerryslab.com"
__product__ = "swapout"

import argparse
import configparser
import json
import logging
import os
import signal
import sys
import time
from collections import namedtuple
from contextlib import contextmanager
from enum import Enum
from os import getenv, rmdir

# Optional imports with graceful fallback
try:
    import yaml

    HAS_YAML = True
except ImportError:
    HAS_YAML = False

try:
    import tomllib  # Python 3.11+

    HAS_TOML = True
except ImportError:
    try:
        import tomli as tomllib  # Fallback for older Python

        HAS_TOML = True
    except ImportError:
        HAS_TOML = False


#########################
## Configuration section
#########################

# Default config file search paths (in order of preference)
CONFIG_SEARCH_PATHS = [
    "/etc/swapout.yaml",
    "/etc/swapout.yml",
    "/etc/swapout.toml",
    "/etc/swapout.json",
    "/etc/swapout.conf",
]

CGROUP_ROOT = "/sys/fs/cgroup"
PROC_ROOT = "/proc"

## name of the per-tool parent cgroup, the per-pid groups live below it
GROUP_NAME = "swapout"

DEFAULT_LIMIT_MB = 8
DEFAULT_TARGET_RSS_KB = 16384
DEFAULT_INTERVAL = 1.0
DEFAULT_MAX_ITERATIONS = 60


def _parse_bool(value):
    """Parse boolean from string."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return bool(value)
    return str(value).lower() in ("true", "yes", "1", "on")


# Unified configuration schema
# Each entry: config_key -> (type_converter, env_var_name, file_key_aliases)
CONFIG_SCHEMA = {
    "limit_mb": (int, "SWAPOUT_LIMIT_MB", ["limit-mb"]),
    "target_rss_kb": (int, "SWAPOUT_TARGET_RSS_KB", ["target-rss-kb"]),
    "interval": (float, "SWAPOUT_INTERVAL", []),
    "max_iterations": (int, "SWAPOUT_MAX_ITER", ["max-iter", "max-iterations"]),
    "quiet": (_parse_bool, "SWAPOUT_QUIET", []),
    "debug_logging": (_parse_bool, "SWAPOUT_DEBUG_LOGGING", ["debug-logging", "debug"]),
    "cgroup_root": (str, "SWAPOUT_CGROUP_ROOT", ["cgroup-root"]),
}


def load_from_file(path=None):
    """Load configuration from file (auto-detect format by extension)."""
    if path:
        paths = [path]
    else:
        paths = CONFIG_SEARCH_PATHS

    for filepath in paths:
        if not os.path.exists(filepath):
            continue
        ext = os.path.splitext(filepath)[1].lower()
        try:
            if ext in (".yaml", ".yml"):
                return _load_yaml(filepath)
            elif ext == ".toml":
                return _load_toml(filepath)
            elif ext == ".json":
                return _load_json(filepath)
            else:  # .conf, .ini, or unknown
                return _load_ini(filepath)
        except ImportError as e:
            logging.warning(f"Config format not supported for {filepath}: {e}")
            continue
        except Exception as e:
            logging.warning(f"Failed to load config from {filepath}: {e}")
            continue
    return {}


def _load_yaml(path):
    """Load YAML config file."""
    if not HAS_YAML:
        raise ImportError("PyYAML not installed - install with: pip install PyYAML")
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return data.get("swapout", data)


def _load_toml(path):
    """Load TOML config file."""
    if not HAS_TOML:
        raise ImportError("TOML support not available - install tomli (Python <3.11) or use Python 3.11+")
    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data.get("swapout", data)


def _load_json(path):
    """Load JSON config file."""
    with open(path) as f:
        data = json.load(f)
    return data.get("swapout", data)


def _load_ini(path):
    """Load INI config file."""
    parser = configparser.ConfigParser()
    parser.read(path)
    if "swapout" not in parser:
        return {}
    return dict(parser["swapout"])


def load_from_env():
    """Load configuration from environment variables."""
    env_config = {}

    for config_key, (converter, env_var, _) in CONFIG_SCHEMA.items():
        value = getenv(env_var)
        if value is not None:
            try:
                env_config[config_key] = converter(value)
            except (ValueError, TypeError) as e:
                logging.warning(f"Invalid value for {env_var}: {value} - {e}")

    return env_config


def get_defaults():
    """Get default configuration values."""
    return {
        "limit_mb": DEFAULT_LIMIT_MB,
        "target_rss_kb": DEFAULT_TARGET_RSS_KB,
        "interval": DEFAULT_INTERVAL,
        "max_iterations": DEFAULT_MAX_ITERATIONS,
        "quiet": False,
        "debug_logging": False,
        "cgroup_root": CGROUP_ROOT,
    }


def normalize_file_config(file_config):
    """Normalize config keys and values from file config.

    Handles underscore/hyphen differences and type conversions.
    """
    normalized = {}

    file_key_to_config = {}
    for config_key, (_, _, aliases) in CONFIG_SCHEMA.items():
        for alias in aliases:
            file_key_to_config[alias] = config_key

    for key, value in file_config.items():
        norm_key = file_key_to_config.get(key, key.replace("-", "_"))

        if norm_key in CONFIG_SCHEMA:
            converter = CONFIG_SCHEMA[norm_key][0]
            try:
                normalized[norm_key] = converter(value)
            except (ValueError, TypeError) as e:
                logging.warning(f"Invalid value for config key {key}: {value} - {e}")
        else:
            logging.debug(f"Ignoring unknown config key {key}")

    return normalized


def load_config(args):
    """Merge config from defaults <- file <- env <- CLI.

    Priority order (highest to lowest):
    1. CLI arguments
    2. Environment variables
    3. Config file
    4. Defaults
    """
    final = get_defaults()

    config_path = getattr(args, "config", None)
    file_config = load_from_file(config_path)
    if file_config:
        final.update(normalize_file_config(file_config))

    final.update(load_from_env())

    for config_key in CONFIG_SCHEMA:
        value = getattr(args, config_key, None)
        if value is not None:
            final[config_key] = value

    return final


RunConfiguration = namedtuple(
    "RunConfiguration",
    ("pid", "limit_mb", "target_rss_kb", "interval", "max_iterations", "quiet", "cgroup_root"),
)


def _positive_or_default(value, default):
    if value is None or value <= 0:
        return default
    return value


def make_run_configuration(pid, settings):
    """Build the immutable run configuration from merged settings.

    Missing or non-positive numbers fall back to the built-in defaults,
    the same way the options have always behaved on the command line.
    """
    return RunConfiguration(
        pid=pid,
        limit_mb=_positive_or_default(settings.get("limit_mb"), DEFAULT_LIMIT_MB),
        target_rss_kb=_positive_or_default(settings.get("target_rss_kb"), DEFAULT_TARGET_RSS_KB),
        interval=float(_positive_or_default(settings.get("interval"), DEFAULT_INTERVAL)),
        max_iterations=_positive_or_default(settings.get("max_iterations"), DEFAULT_MAX_ITERATIONS),
        quiet=bool(settings.get("quiet")),
        cgroup_root=settings.get("cgroup_root") or CGROUP_ROOT,
    )


class SwapoutArgumentParser(argparse.ArgumentParser):
    """Usage errors exit with 1, like every other failure of the tool."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def create_argument_parser():
    """Create argument parser with all configuration options."""
    p = SwapoutArgumentParser(
        prog="swapout",
        description=(
            "Force a process's memory to be pushed into swap by constraining it to a "
            "small cgroup memory limit, then restoring the limit afterwards."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Requires root (or sufficient privileges to manage cgroups and move PIDs).

Configuration priority (highest to lowest):
  1. Command-line arguments
  2. Environment variables (SWAPOUT_*)
  3. Config file (--config or auto-detected)
  4. Built-in defaults

Config file search order (first found is used):
  /etc/swapout.yaml
  /etc/swapout.yml
  /etc/swapout.toml
  /etc/swapout.json
  /etc/swapout.conf

Example usage:
  swapout 12345
  swapout 12345 -m 8 -r 16384 -i 1 -n 60
""",
    )

    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    p.add_argument("pid", nargs="?", metavar="PID", help="Process to push into swap")

    p.add_argument(
        "--config",
        "-c",
        metavar="PATH",
        help="Configuration file path (auto-detects format by extension)",
    )
    p.add_argument(
        "--limit-mb",
        "-m",
        dest="limit_mb",
        type=int,
        metavar="MB",
        help=f"Memory limit during swapout (default: {DEFAULT_LIMIT_MB} MB)",
    )
    p.add_argument(
        "--target-rss-kb",
        "-r",
        dest="target_rss_kb",
        type=int,
        metavar="KB",
        help=f"Target RSS to reach before stopping (default: {DEFAULT_TARGET_RSS_KB} kB)",
    )
    p.add_argument(
        "--interval",
        "-i",
        type=float,
        metavar="SECS",
        help=f"Poll interval in seconds (default: {DEFAULT_INTERVAL})",
    )
    p.add_argument(
        "--max-iter",
        "-n",
        dest="max_iterations",
        type=int,
        metavar="N",
        help=f"Maximum iterations before giving up (default: {DEFAULT_MAX_ITERATIONS})",
    )
    p.add_argument(
        "--quiet",
        "-q",
        action="store_true",
        default=None,
        help="Less verbose output",
    )
    p.add_argument(
        "--debug",
        "--debug-logging",
        dest="debug_logging",
        action="store_true",
        default=None,
        help="Enable debug logging to stderr",
    )
    p.add_argument(
        "--cgroup-root",
        dest="cgroup_root",
        metavar="PATH",
        help=f"Mount point of the cgroup filesystem (default: {CGROUP_ROOT})",
    )

    return p


#########################
## Errors
#########################


class SwapoutError(Exception):
    """Base class for everything that makes a swapout run fail."""


class NoController(SwapoutError):
    pass


class SetupFailure(SwapoutError):
    """Creating the cgroup or moving the process into it failed."""


class MigrationFailed(SetupFailure):
    pass


class LimitWriteFailed(SwapoutError):
    pass


class ProcessNotFound(SwapoutError):
    """The target process is gone.  While polling this means we're done."""


class Interrupted(SwapoutError):
    pass


#########################
## Process memory sampling
#########################

ProcessMemorySample = namedtuple("ProcessMemorySample", ("pid", "rss_kb", "swap_kb"))


def process_exists(pid):
    return os.path.exists(os.path.join(PROC_ROOT, str(pid)))


def _parse_kb_value(line):
    """'VmSwap:     128 kB' -> 128"""
    try:
        return int(line.split()[1])
    except (IndexError, ValueError):
        return 0


def read_process_memory(pid):
    """Read VmRSS and VmSwap (in kB) from /proc/<pid>/status.

    Kernel threads have neither line, they are reported as 0.  Raises
    ProcessNotFound if the status file can't be opened.
    """
    rss_kb = 0
    swap_kb = 0
    try:
        with open(os.path.join(PROC_ROOT, str(pid), "status")) as f:
            for line in f:
                if line.startswith("VmRSS:"):
                    rss_kb = _parse_kb_value(line)
                elif line.startswith("VmSwap:"):
                    swap_kb = _parse_kb_value(line)
    except (FileNotFoundError, ProcessLookupError, OSError) as e:
        raise ProcessNotFound(f"Process {pid} no longer exists ({e})") from e
    return ProcessMemorySample(pid, rss_kb, swap_kb)


#########################
## Cgroup support
#########################


class ControlGroupVersion(Enum):
    NONE = "none"
    V1 = "v1"
    V2 = "v2"


def detect_cgroup_version(root=None):
    """v2 if the unified hierarchy is mounted, v1 if there is a memory controller."""
    root = root or CGROUP_ROOT
    if os.path.exists(os.path.join(root, "cgroup.controllers")):
        return ControlGroupVersion.V2
    if os.path.exists(os.path.join(root, "memory")):
        return ControlGroupVersion.V1
    return ControlGroupVersion.NONE


def read_file(path):
    with open(path) as f:
        return f.read()


def write_file(path, value):
    ## cgroupfs reports rejected writes on close, so the with block matters
    with open(path, "w") as f:
        f.write(value)


class ControlGroupContext:
    """One provisioned cgroup for one target process.

    group_path is only set for a group that was successfully set up.
    original_limit holds the text of the limit file as it was before
    swapout touched it, or None if it could not be read.
    """

    def __init__(self, version, group_path, membership_path, limit_path):
        self.version = version
        self.group_path = group_path
        self.membership_path = membership_path
        self.limit_path = limit_path
        self.original_limit = None


class ControlGroupBackend:
    """Base class for the two cgroup flavours.

    Subclasses only differ in where the hierarchy lives, in the name of
    the file holding the memory ceiling and in what "unlimited" looks
    like.  Use for_version() to get the right one.
    """

    version = ControlGroupVersion.NONE
    limit_file = None
    unlimited = None

    def __init__(self, root=None):
        self.root = root or CGROUP_ROOT

    @staticmethod
    def for_version(version, root=None):
        for backend_class in (CgroupV2Backend, CgroupV1Backend):
            if backend_class.version == version:
                return backend_class(root)
        raise NoController(f"No cgroup v1/v2 memory controller detected under {root or CGROUP_ROOT}")

    def hierarchy_root(self):
        raise NotImplementedError()

    def group_path(self, pid):
        return os.path.join(self.hierarchy_root(), GROUP_NAME, str(pid))

    def provision(self, pid):
        """Create the group for pid, back up its limit and move pid into it.

        A group left behind by an earlier crashed run is reused.
        """
        group_path = self.group_path(pid)
        try:
            os.makedirs(group_path, exist_ok=True)
        except OSError as e:
            raise SetupFailure(f"Failed to create cgroup {group_path}: {e}") from e
        logging.info(f"cgroup {self.version.value} detected, using {group_path}")

        ctx = ControlGroupContext(
            self.version,
            group_path,
            os.path.join(group_path, "cgroup.procs"),
            os.path.join(group_path, self.limit_file),
        )

        try:
            original_limit = read_file(ctx.limit_path).strip()
        except OSError as e:
            logging.warning(f"Could not read original limit at {ctx.limit_path} ({e}), will not restore it")
            original_limit = None
        if original_limit:
            ctx.original_limit = original_limit
            logging.info(f"Original limit at {ctx.limit_path}: '{original_limit}'")

        try:
            write_file(ctx.membership_path, f"{pid}\n")
        except OSError as e:
            self._discard_group(group_path)
            raise MigrationFailed(f"Failed to move pid {pid} into {ctx.membership_path}: {e}") from e
        logging.info(f"Moved PID {pid} into {group_path}")
        return ctx

    def _discard_group(self, group_path):
        try:
            rmdir(group_path)
        except OSError as e:
            logging.debug(f"Left {group_path} behind: {e}")

    def apply_limit(self, ctx, limit_mb):
        value = f"{limit_mb * 1024 * 1024}\n"
        logging.info(f"Applying temporary limit {value.strip()} to {ctx.limit_path}")
        try:
            write_file(ctx.limit_path, value)
        except OSError as e:
            raise LimitWriteFailed(f"Failed to set limit at {ctx.limit_path}: {e}") from e

    def restore_limit(self, ctx):
        """Put the original limit back, or lift the limit if we never saw it.

        Never raises - a failure here must not stop the cleanup.
        """
        value = ctx.original_limit or self.unlimited
        logging.info(f"Restoring limit at {ctx.limit_path} to '{value}'")
        try:
            write_file(ctx.limit_path, f"{value}\n")
        except OSError as e:
            logging.error(f"Failed to restore limit at {ctx.limit_path}: {e}")

    def cleanup(self, ctx):
        """Remove the group directory.  Best effort, never raises.

        The kernel refuses as long as the group still has members, i.e.
        the target is still alive and hasn't been moved elsewhere.
        """
        if not ctx.group_path:
            return
        try:
            rmdir(ctx.group_path)
        except OSError as e:
            logging.warning(f"Could not remove {ctx.group_path}: {e}")
            return
        logging.info(f"Removed cgroup {ctx.group_path}")


class CgroupV2Backend(ControlGroupBackend):
    """Unified hierarchy.  memory.high throttles and reclaims, it never OOM-kills."""

    version = ControlGroupVersion.V2
    limit_file = "memory.high"
    unlimited = "max"

    def hierarchy_root(self):
        return self.root


class CgroupV1Backend(ControlGroupBackend):
    version = ControlGroupVersion.V1
    limit_file = "memory.limit_in_bytes"
    ## what the kernel reports for an unlimited v1 group (LLONG_MAX rounded down to a page)
    unlimited = "9223372036854771712"

    def hierarchy_root(self):
        return os.path.join(self.root, "memory")


#########################
## Swapout controller
#########################


class RunOutcome(Enum):
    CONVERGED = "converged"
    TIMED_OUT = "timed_out"
    PROCESS_VANISHED = "process_vanished"


@contextmanager
def provisioned(backend, pid):
    """Provision a group for pid; restore and remove it when the block exits.

    Restore and cleanup run exactly once, whatever happens inside the
    block.  If provisioning itself fails there is nothing to undo.
    """
    ctx = backend.provision(pid)
    try:
        yield ctx
    finally:
        backend.restore_limit(ctx)
        backend.cleanup(ctx)


class SwapoutController:
    """Drives one swapout run for one process.

    detect -> provision -> apply limit -> poll -> restore -> cleanup
    """

    def __init__(self, run_config):
        self.config = run_config
        self.cancelled = False
        self.samples_taken = 0
        self.first_sample = None
        self.last_sample = None

    def cancel(self, signum=None, frame=None):
        """Ask the poll loop to stop.  Signature fits signal.signal()."""
        if signum is not None:
            logging.info(f"Got signal {signum}, stopping after the current step")
        self.cancelled = True

    def _check_cancelled(self):
        if self.cancelled:
            raise Interrupted(f"Interrupted while swapping out pid {self.config.pid}")

    def run(self):
        """Run the whole sequence and return the RunOutcome.

        Raises NoController or SetupFailure before anything has been
        changed, LimitWriteFailed or Interrupted after the group has been
        restored and removed again.
        """
        version = detect_cgroup_version(self.config.cgroup_root)
        logging.debug(f"cgroup version: {version.value}")
        backend = ControlGroupBackend.for_version(version, self.config.cgroup_root)

        with provisioned(backend, self.config.pid) as ctx:
            backend.apply_limit(ctx, self.config.limit_mb)
            outcome = self.poll()

        self.log_summary(outcome)
        return outcome

    def poll(self):
        """Sample the process until it is small enough, gone, or we give up.

        There is no sleep before the first sample nor after the last one.
        """
        logging.info("Forcing swap... polling process memory usage")
        for iteration in range(1, self.config.max_iterations + 1):
            if iteration > 1:
                self._check_cancelled()
                time.sleep(self.config.interval)
            self._check_cancelled()

            try:
                sample = read_process_memory(self.config.pid)
            except ProcessNotFound:
                logging.info(f"Process {self.config.pid} no longer exists, stopping.")
                return RunOutcome.PROCESS_VANISHED

            self.samples_taken = iteration
            if self.first_sample is None:
                self.first_sample = sample
            self.last_sample = sample
            logging.info(f"  iter {iteration:2d}: RSS={sample.rss_kb} kB, SWAP={sample.swap_kb} kB")

            if sample.rss_kb <= self.config.target_rss_kb:
                logging.info(f"Target RSS reached (<= {self.config.target_rss_kb} kB), stopping.")
                return RunOutcome.CONVERGED

        logging.warning(
            "max_iter (%s) reached without hitting target RSS of %s kB; restoring anyway."
            % (self.config.max_iterations, self.config.target_rss_kb)
        )
        return RunOutcome.TIMED_OUT

    def log_summary(self, outcome):
        if self.first_sample is None:
            logging.info(f"swapout finished ({outcome.value}) without any memory sample")
            return
        logging.info(
            "swapout finished (%s) after %s samples: RSS %s -> %s kB, SWAP %s -> %s kB"
            % (
                outcome.value,
                self.samples_taken,
                self.first_sample.rss_kb,
                self.last_sample.rss_kb,
                self.first_sample.swap_kb,
                self.last_sample.swap_kb,
            )
        )


@contextmanager
def cancel_on_signals(controller, signums=(signal.SIGINT, signal.SIGTERM)):
    """Route the given signals to controller.cancel() for the duration of the block."""
    previous = {signum: signal.signal(signum, controller.cancel) for signum in signums}
    try:
        yield controller
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def setup_logging(settings):
    if settings.get("debug_logging"):
        level = logging.DEBUG
    elif settings.get("quiet"):
        level = logging.ERROR
    else:
        level = logging.INFO
    logging.basicConfig(format="%(levelname)s: %(message)s")
    logging.root.setLevel(level)


def main(argv=None):
    """Main entry point for swapout.  Returns the process exit code."""
    p = create_argument_parser()
    args = p.parse_args(argv)

    # Initialize configuration from all sources (CLI > env > file > defaults)
    settings = load_config(args)
    setup_logging(settings)

    if args.pid is None:
        logging.error("PID is required.")
        p.print_usage(sys.stderr)
        return 1
    try:
        pid = int(args.pid)
    except ValueError:
        pid = 0
    if pid <= 0:
        logging.error(f"Invalid PID: {args.pid}")
        return 1

    run_config = make_run_configuration(pid, settings)

    if not process_exists(pid):
        logging.error(f"No such process: {pid}")
        return 1

    logging.info(f"swapout: targeting PID {pid}")
    logging.info(
        "limit_mb=%s, target_rss_kb=%s, interval=%.2f, max_iter=%s"
        % (run_config.limit_mb, run_config.target_rss_kb, run_config.interval, run_config.max_iterations)
    )

    controller = SwapoutController(run_config)
    try:
        with cancel_on_signals(controller):
            controller.run()
    except SwapoutError as e:
        logging.error(str(e))
        return 1

    logging.info("swapout complete.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
