from insight_dedup.cli.main import app

app(prog_name="dedup")
