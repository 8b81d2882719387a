import sys

import click

from passfs.cli import cli
from passfs.common import PassfsExpectedError


def main() -> None:
    try:
        cli()
    except PassfsExpectedError as e:
        click.secho(f"{e.__class__.__module__}.{e.__class__.__name__}: ", fg="red", nl=False)
        click.secho(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
