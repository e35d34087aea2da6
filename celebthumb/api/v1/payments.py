from fastapi import APIRouter, HTTPException, Depends, Request
import stripe
import json
from celebthumb.core.config import settings
from celebthumb.services.ledger import CreditsLedger, get_ledger
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/webhook", include_in_schema=False)
async def stripe_webhook(request: Request, ledger: CreditsLedger = Depends(get_ledger)):
    """
    Handle Stripe webhook events.

    Renewals grant a fresh allotment for the stored plan, cancellations
    drop the user to the free plan and failed invoices mark the
    subscription past due.
    """
    payload = await request.body()
    sig_header = request.headers.get('stripe-signature')

    webhook_secret = settings.STRIPE_WEBHOOK_SECRET

    if not webhook_secret and not settings.TEST_MODE:
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    try:
        if webhook_secret:
            if not sig_header:
                raise HTTPException(status_code=400, detail="Missing signature")
            event = stripe.Webhook.construct_event(
                payload, sig_header, webhook_secret
            )
        else:
            event = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    event_type = event['type']
    obj = event['data']['object']
    customer_id = obj.get('customer')

    if not customer_id:
        logger.warning(f"Ignoring {event_type} event without a customer")
        return {"status": "ignored"}

    if event_type == 'invoice.paid':
        await handle_invoice_paid(ledger, obj)
    elif event_type == 'customer.subscription.deleted':
        await ledger.cancel_subscription(customer_id, obj['id'])
    elif event_type == 'invoice.payment_failed':
        subscription_id = invoice_subscription_id(obj)
        if subscription_id:
            await ledger.mark_past_due(customer_id, subscription_id)
    else:
        logger.info(f"Unhandled Stripe event {event_type}")
        return {"status": "ignored"}

    return {"status": "success"}


def invoice_subscription_id(invoice):
    """Subscription an invoice bills; newer API versions nest it under ``parent``."""
    subscription_id = invoice.get('subscription')
    if subscription_id:
        return subscription_id
    details = (invoice.get('parent') or {}).get('subscription_details') or {}
    return details.get('subscription')


async def handle_invoice_paid(ledger: CreditsLedger, invoice):
    """
    Only billing-cycle invoices grant credits.

    The first invoice and proration invoices are covered by the plan change
    itself. ``invoice.payment_succeeded`` is not handled because Stripe sends
    it alongside ``invoice.paid`` for the same invoice.
    """
    if invoice.get('billing_reason') != 'subscription_cycle':
        logger.info(
            f"Skipping {invoice.get('billing_reason')} invoice {invoice.get('id')} "
            f"for customer {invoice['customer']}"
        )
        return
    subscription_id = invoice_subscription_id(invoice)
    if not subscription_id:
        logger.warning(f"Paid invoice {invoice.get('id')} has no subscription")
        return
    await ledger.renew_subscription(invoice['customer'], subscription_id, invoice['id'])
