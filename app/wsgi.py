from app.brgy import create_app

app = create_app()
