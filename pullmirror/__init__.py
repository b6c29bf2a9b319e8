# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Pull mirror service: keeps target git repositories in sync with origins."""

__version__ = "0.1.0"
