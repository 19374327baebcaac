"""
NDC distribution gateway package.

The gateway fronts an airline NDC provider API, wrapping every provider
operation with:
- Token acquisition: cached bearer tokens with single-flight refresh
- Circuit-breaking per operation and host
- Retries with exponential backoff and jitter
- Deadlines and cooperative cancellation
- A uniform ``ApiResult`` envelope carrying correlation metadata

Structure:
- app.main: FastAPI app and routes.
- app.client: ``NdcGatewayClient``, the per-operation call path.
- app.factory: ``build_gateway`` composition root.
- app.adapters: HTTP transport and provider body inspection.
- app.auth: Token cache and credential exchange.
- app.transactions: Masked per-transaction record of provider exchanges.
"""
