"""Entry point wrapper for ``python -m sonifier``.

When the package is executed as a module the code here simply forwards
execution to :func:`sonifier.main`, so ``python -m sonifier`` and the
installed ``sonifier`` console script behave identically.

Example
-------
Render a plan file offline::

    python -m sonifier render --events plan.json --duration 8000 \
        --seed 7 --wav out.wav --midi out.mid
"""

from . import main

if __name__ == "__main__":
    main()
