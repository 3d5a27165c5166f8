from tg2rss.cli import app

app()
