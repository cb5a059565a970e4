"""
Example: Two agents on one platform, talking to each other.

"Support" answers users and asks "Billing" for invoice details over A2A.
"Billing" also accepts a payment webhook.

When platform.run() is called, it starts:
- DTS Worker (background thread) - runs every agent's workflows and activities
- DTS Client - starts workflows, delivers messages and reads status
- Webhook server - POST http://localhost:8000/webhooks/Billing/payment

Usage:
    1. Start DTS emulator: docker run -d -p 8080:8080 -p 8082:8082 cgillum/durabletask-emulator
    2. Run this server: python simple_server.py
    3. Send a webhook: curl -X POST localhost:8000/webhooks/Billing/payment -d '{"invoice": "42"}'
"""

from dts_agents import AgentPlatform, MessageEnvelope, WebhookResponse

platform = AgentPlatform(dts_host="localhost:8080", taskhub="default")

support = platform.register_agent("Support", tenant_id="contoso")
billing = platform.register_agent("Billing", tenant_id="contoso")

paid_invoices = set()


@billing.on_chat
def invoice_status(ctx):
    invoice = ctx.text.strip()
    status = "paid" if invoice in paid_invoices else "open"
    ctx.reply(f"Invoice {invoice} is {status}")


@billing.on_webhook("payment")
def payment_received(request):
    body = request.body_json() or {}
    if "invoice" not in body:
        return WebhookResponse.bad_request("invoice is required")
    paid_invoices.add(str(body["invoice"]))
    return {"accepted": body["invoice"]}


@support.on_chat
def answer(ctx):
    """Runs inside Support's built-in workflow: engine calls use ``yield from``."""
    if not ctx.text.lower().startswith("invoice "):
        ctx.reply("Ask me about an invoice, e.g. 'invoice 42'")
        return
    reply = yield from support.a2a.send_chat_to_builtin(
        "Billing",
        MessageEnvelope(text=ctx.text.split(" ", 1)[1], thread_id=ctx.thread_id),
    )
    ctx.reply(reply.text)


if __name__ == "__main__":
    print("Starting agents with DTS backend...")
    print("Dashboard: http://localhost:8082")
    platform.run(port=8000)
