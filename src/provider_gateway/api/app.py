from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from provider_gateway.api.schemas import (
    ApiKeyRequest,
    CredentialStatusResponse,
    GenerateRequest,
    GenerateResponse,
    ProviderStatusResponse,
    ProvidersResponse,
)
from provider_gateway.llm import GenerationResult, ProviderGateway, ProviderId, create_gateway

log = logging.getLogger("provider_gateway.api")


def create_app(gateway: ProviderGateway | None = None) -> FastAPI:
    gateway = gateway or create_gateway()

    app = FastAPI(title="Provider Gateway API", version="0.1.0")
    app.state.gateway = gateway

    def _credential_status(provider: ProviderId) -> CredentialStatusResponse:
        return CredentialStatusResponse(
            provider=provider,
            authenticated=gateway.is_authenticated(provider),
        )

    @app.post("/generate", response_model=GenerateResponse)
    async def generate(payload: GenerateRequest) -> GenerateResponse:
        result = await gateway.invoke(
            payload.operation,
            payload.args,
            provider=payload.provider,
            model=payload.model,
        )
        return GenerateResponse.model_validate(result.model_dump())

    @app.post("/generate/stream")
    async def generate_stream(payload: GenerateRequest, request: Request) -> StreamingResponse:
        async def chunk_generator() -> AsyncIterator[str]:
            chunks: asyncio.Queue[str | None] = asyncio.Queue()
            abort = asyncio.Event()

            async def produce() -> GenerationResult:
                try:
                    return await gateway.invoke_streaming(
                        payload.operation,
                        payload.args,
                        chunks.put_nowait,
                        abort,
                        provider=payload.provider,
                        model=payload.model,
                    )
                finally:
                    chunks.put_nowait(None)

            task = asyncio.create_task(produce())
            try:
                while True:
                    chunk = await chunks.get()
                    if chunk is None:
                        break
                    if await request.is_disconnected():
                        log.info("Client disconnected; aborting stream")
                        abort.set()
                        break
                    yield chunk

                if not abort.is_set():
                    result = await task
                    if not result.success:
                        yield f"\n[error] {result.error}\n"
            finally:
                abort.set()
                if not task.done():
                    task.cancel()

        return StreamingResponse(chunk_generator(), media_type="text/plain; charset=utf-8")

    @app.get("/providers", response_model=ProvidersResponse)
    async def list_providers(
        include_models: bool = Query(default=True),
    ) -> ProvidersResponse:
        rows: list[ProviderStatusResponse] = []
        for provider, client in gateway.clients.items():
            models = await gateway.list_models(provider) if include_models else []
            rows.append(
                ProviderStatusResponse(
                    provider=provider,
                    authenticated=client.is_authenticated(),
                    has_api_key=bool(gateway.store.get_api_key(provider)),
                    has_oauth_token=gateway.store.get_token(provider) is not None,
                    supports_streaming=client.supports_streaming,
                    default_model=client.default_model,
                    models=models,
                )
            )
        return ProvidersResponse(
            preferred_provider=gateway.config.preferred_provider,
            fallback_order=gateway.config.fallback_order,
            providers=rows,
        )

    @app.put("/credentials/{provider}/api-key", response_model=CredentialStatusResponse)
    async def put_api_key(provider: ProviderId, payload: ApiKeyRequest) -> CredentialStatusResponse:
        try:
            gateway.set_api_key(provider, payload.api_key)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _credential_status(provider)

    @app.delete("/credentials/{provider}/api-key", response_model=CredentialStatusResponse)
    async def delete_api_key(provider: ProviderId) -> CredentialStatusResponse:
        gateway.clear_api_key(provider)
        return _credential_status(provider)

    @app.delete("/credentials/{provider}/token", response_model=CredentialStatusResponse)
    async def delete_token(provider: ProviderId) -> CredentialStatusResponse:
        gateway.sign_out(provider)
        return _credential_status(provider)

    return app
