import os

from esk_builder import log
from esk_builder.errors import MissingDependency
from esk_builder.tools import run_cmd
from esk_builder.variant import DISABLE, ENABLE


def find_defconfig(kernel_dir, defconfig, arch="arm64"):
    configs_dir = os.path.join(kernel_dir, "arch", arch, "configs")
    for dirname, subdirs, files in os.walk(configs_dir):
        subdirs.sort()
        if defconfig in files:
            return os.path.join(dirname, defconfig)
    raise MissingDependency("Defconfig %s not found in %s" % (defconfig, configs_dir))


class KernelConfig:
    """
    Key-value editor over the kernel configuration (scripts/config)

    Edits the generated <out>/.config when it exists, the defconfig otherwise.
    """

    def __init__(self, kernel_dir, out_dir, defconfig, make_args=(), arch="arm64", runner=None):
        self.kernel_dir = kernel_dir
        self.out_dir = out_dir
        self.defconfig = defconfig
        self.make_args = list(make_args)
        self.arch = arch
        self.runner = runner or run_cmd

    @property
    def path(self):
        cfg = os.path.join(self.out_dir, ".config")
        if os.path.isfile(cfg):
            return cfg
        return find_defconfig(self.kernel_dir, self.defconfig, self.arch)

    def _config(self, *args):
        script = os.path.join(self.kernel_dir, "scripts", "config")
        self.runner([script, "--file", self.path] + list(args), cwd=self.kernel_dir)

    def enable(self, symbol):
        self._config("--enable", symbol)

    def disable(self, symbol):
        self._config("--disable", symbol)

    def apply(self, directives):
        for directive in directives:
            if directive.action == ENABLE:
                self.enable(directive.symbol)
            elif directive.action == DISABLE:
                self.disable(directive.symbol)
            else:
                raise ValueError("Unknown config action: %s" % directive.action)

    def generate(self):
        log.info("Generate defconfig: " + self.defconfig)
        self.runner(["make"] + self.make_args + [self.defconfig], cwd=self.kernel_dir)

    def regenerate(self):
        self.runner(["make"] + self.make_args + ["olddefconfig"], cwd=self.kernel_dir)
