"""
Console output for zpkg
"""

import click


class Console:
    """Coloured [INFO]/[WARN]/[ERROR] lines on the terminal"""

    def __init__(self, quiet=False):
        self.quiet = quiet

    def info(self, message):
        if self.quiet:
            return
        click.echo(click.style('[INFO]', fg='green') + f" {message}")

    def warn(self, message):
        click.echo(click.style('[WARN]', fg='yellow', bold=True) + f" {message}", err=True)

    def error(self, message):
        click.echo(click.style('[ERROR]', fg='red') + f" {message}", err=True)
