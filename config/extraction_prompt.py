"""Prompt for the quote extraction model, with worked examples (pt-BR/en).

Tune the examples here rather than in code; the adapter only fills in the
message text.
"""

SYSTEM_PROMPT = """\
You analyze messages sent by suppliers and extract one price quote.
Return a JSON object with keys:
  "productName" (string), "price" (number, decimal point, no currency symbol),
  "supplierName" (string or null), "conditions" (string or null).
The supplier name may be implicit from the signature or context; if it is not
stated, use null. Conditions are payment terms, delivery deadlines, minimum
order, validity and similar.
If several products are mentioned, pick the first clearly identifiable one or
the most prominent one.
If the product name or the price is missing, return null.
Return only the JSON, no commentary.
"""

EXAMPLES = [
    (
        "Hi, we have new stock of 'Premium Coffee Beans' at $25.50 per kg. Payment 30 days. - The Coffee Co.",
        '{"productName": "Premium Coffee Beans", "price": 25.50, "supplierName": "The Coffee Co.", '
        '"conditions": "Payment 30 days."}',
    ),
    (
        " oferta especial SSD Kingston 1TB por R$350,00. Validade 2 dias. Estoque limitado.",
        '{"productName": "SSD Kingston 1TB", "price": 350.00, "supplierName": null, '
        '"conditions": "Validade 2 dias. Estoque limitado."}',
    ),
    (
        "Super promoção: açucar cristal marca DoceLar, pacote 5kg por apenas 18,90. Falar com Vendas.",
        '{"productName": "Açucar cristal DoceLar 5kg", "price": 18.90, "supplierName": null, '
        '"conditions": "Falar com Vendas."}',
    ),
]


def build_user_prompt(message: str) -> str:
    """Examples followed by the message to analyze."""
    parts = []
    for i, (example, expected) in enumerate(EXAMPLES, start=1):
        parts.append(f"Example message {i}: {example!r}\nExpected JSON: {expected}")
    parts.append(f'Message to analyze:\n"""\n{message}\n"""\nJSON output:')
    return "\n\n".join(parts)
