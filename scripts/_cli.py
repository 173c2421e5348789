"""Zero-arg CLI wrappers for console_scripts entry points.

Each script's ``main(argv)`` accepts ``sys.argv[1:]``.  The wrappers here
adapt that signature to the zero-arg callable that setuptools
console_scripts expects.
"""
from __future__ import annotations

import sys


def storygraph_cluster() -> None:
    from scripts.storygraph_cluster import main
    raise SystemExit(main(sys.argv[1:]))


def storygraph_status() -> None:
    from scripts.storygraph_status import main
    raise SystemExit(main(sys.argv[1:]))


def storygraph_import_articles() -> None:
    from scripts.storygraph_import_articles import main
    raise SystemExit(main(sys.argv[1:]))
