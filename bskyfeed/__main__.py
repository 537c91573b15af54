from bskyfeed.main import cli

cli()
