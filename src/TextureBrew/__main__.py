"""Entrypoint for `python -m TextureBrew`.

Usage:
  - Convert:  `python -m TextureBrew textures/ -o out/`
  - Pack ORM: `python -m TextureBrew --pack ogm --ao a.png --gloss g.png -o orm.ktx2`
"""
import logging

logger = logging.getLogger("texture_pipeline")


def _run_cli():
    from .cli import main as cli_main
    logger.debug("Dispatching to CLI entrypoint.")
    cli_main()


if __name__ == "__main__":
    _run_cli()
