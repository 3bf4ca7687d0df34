import modal

app = modal.App("outbound-events")

image = (
    modal.Image.debian_slim(python_version="3.11")
    .pip_install(
        "fastapi>=0.115.0",
        "uvicorn>=0.30.0",
        "pydantic>=2.7",
        "pydantic-settings>=2.3",
        "supabase>=2.5",
        "httpx>=0.27",
        "python-jose[cryptography]>=3.3",
        "redis>=5.0",
    )
    .add_local_python_source("outbound_events")
)

secrets = [modal.Secret.from_name("outbound-events-env")]


@app.function(image=image, secrets=secrets)
@modal.asgi_app()
def fastapi_app():
    from outbound_events.main import app as web_app

    return web_app


@app.function(image=image, secrets=secrets, schedule=modal.Period(minutes=1))
def sweep_orphans():
    from outbound_events.db import supabase
    from outbound_events.observability import configured_export, persist_metrics_snapshot
    from outbound_events.services.orphan_queue import build_orphan_queue

    result = build_orphan_queue(supabase).sweep(request_id="modal-orphan-sweep")
    persist_metrics_snapshot(
        supabase_client=supabase,
        source="modal_orphan_sweep",
        request_id="modal-orphan-sweep",
        reset_after_persist=True,
        export=configured_export(),
    )
    return result.as_dict()
