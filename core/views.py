from django.http import HttpResponse, JsonResponse

HOME_PAGE_HTML = """<!DOCTYPE html>
<html lang="es">
<head>
<meta charset="UTF-8" />
<title>QR Pay</title>
</head>
<body>
<h1>QR Pay</h1>
<p>Peso-denominated QR payments settled in USDC on Polygon and Optimism.</p>
<ul>
    <li><code>POST /payments</code> issue a payment QR</li>
    <li><code>POST /payments/scan</code> settle a scanned code</li>
    <li><code>GET /payments/&lt;id&gt;</code> payment status</li>
</ul>
</body>
</html>
"""


def home(request):
    return HttpResponse(HOME_PAGE_HTML)


def health(request):
    return JsonResponse({"status": "ok", "service": "qrpay"})
