from shimmerdesk.cli.main import cli

cli()
