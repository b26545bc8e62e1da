import modal

app = modal.App("mail-fulfillment-api")

image = (
    modal.Image.debian_slim(python_version="3.11")
    .pip_install(
        "fastapi>=0.115.0",
        "uvicorn>=0.30.0",
        "pydantic>=2.7.0",
        "pydantic-settings>=2.3.0",
        "supabase>=2.5.0",
        "httpx>=0.27.0",
        "stripe>=10.0.0",
        "python-jose[cryptography]>=3.3.0",
    )
    .add_local_python_source("src")
)


@app.function(image=image, secrets=[modal.Secret.from_name("mail-fulfillment-api")])
@modal.asgi_app()
def fastapi_app():
    from src.main import app as web_app

    return web_app


@app.function(
    image=image,
    secrets=[modal.Secret.from_name("mail-fulfillment-api")],
    schedule=modal.Period(minutes=15),
)
def scheduled_reconciliation():
    from src.domain.reconciliation import run_reconciliation

    report = run_reconciliation(request_id="modal-schedule")
    return {
        "scanned_count": report.scanned_count,
        "fixed_count": report.count("fixed"),
        "submitted_to_lob_count": report.count("submitted_to_lob"),
        "error_count": report.count("error"),
    }
