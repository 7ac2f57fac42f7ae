###############################################################
## ESK kernel builder
##
## Builds a GKI kernel with optional KernelSU, SuSFS, LXC and
## Baseband Guard integrations, packages it as an AnyKernel3 zip
## and reports to Telegram.

__version__ = "1.0.0"
