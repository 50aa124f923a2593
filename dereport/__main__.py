from dereport.cli import app

app()
