from messaging_sessions.cli.main import app

app()
