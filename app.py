# app.py
# DARRA storefront backend: products, users and orders persisted as JSON files,
# bcrypt-hashed accounts, JWT bearer tokens and FCFA/EUR price conversion.
#
# To Run This Backend:
# 1. Install dependencies: pip install -e .
# 2. Run from your terminal: python app.py
# 3. The server will start on http://127.0.0.1:5000 (HOST and PORT override it)
# 4. Data is kept in ./data/{users,products,orders}.json (DATA_DIR overrides it)

import datetime
import json
import logging
import math
import os
import time
import uuid
from functools import wraps

from flask import Flask, current_app, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_bcrypt import Bcrypt
from flask_jwt_extended import create_access_token, jwt_required, JWTManager, get_jwt, get_jwt_identity, verify_jwt_in_request
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename

from config import get_settings
from currency import Currency, CurrencyConverter, HttpRateProvider, JsonRateCache, SimulatedRateProvider, round_amount
from storage import AutoSaver, JsonStore, install_shutdown_handlers, now_iso

logger = logging.getLogger(__name__)

# --- App Setup ---
settings = get_settings()
app = Flask(__name__)
CORS(
    app,
    origins=[settings.cors_origin],
    methods=['GET', 'POST', 'PUT', 'DELETE', 'OPTIONS'],
    allow_headers=['Content-Type', 'Authorization'],
    supports_credentials=True,
)
app.json.ensure_ascii = False
app.config["JWT_SECRET_KEY"] = settings.jwt_secret_key
app.config["JWT_ACCESS_TOKEN_EXPIRES"] = datetime.timedelta(seconds=settings.jwt_expires_in)
app.config["BCRYPT_LOG_ROUNDS"] = settings.bcrypt_log_rounds
app.config["MAX_CONTENT_LENGTH"] = 50 * 1024 * 1024
app.config["DATA_DIR"] = settings.data_dir
app.config["UPLOADS_DIR"] = settings.uploads_dir
app.config["ADMIN_EMAIL"] = settings.admin_email
app.config["ADMIN_PASSWORD"] = settings.admin_password
bcrypt = Bcrypt(app)
jwt = JWTManager(app)

STARTED_AT = time.time()
MUTATING_METHODS = {'POST', 'PUT', 'PATCH', 'DELETE'}
MAX_IMAGES = 5
MAX_IMAGE_SIZE = 5 * 1024 * 1024
MAX_AMOUNT = 1e12
PLACEHOLDER_IMAGE = '/images/placeholder.jpg'
ORDER_STATUSES = ('pending', 'processing', 'shipped', 'delivered', 'cancelled')
CATEGORIES = [
    '💄 Cosmétiques',
    '🌸 Parfums et fragrances',
    '✨ Soins du visage',
    '💅 Soins des ongles',
    '🧴 Soins capillaires',
]


class UploadError(Exception):
    pass


# --- Response Helpers ---
def error_response(message, status):
    return jsonify({"success": False, "error": message}), status


def sanitize_user(user):
    return {key: value for key, value in user.items() if key != 'password'}


def issue_token(user):
    additional_claims = {"email": user['email'], "isAdmin": bool(user.get('isAdmin'))}
    return create_access_token(identity=user['id'], additional_claims=additional_claims)


def request_data():
    """JSON body, or the form fields of a multipart/urlencoded request."""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


# --- JWT Error Responses ---
@jwt.unauthorized_loader
def missing_token(reason):
    return error_response('Token manquant', 401)


@jwt.invalid_token_loader
def invalid_token(reason):
    return error_response('Token invalide', 403)


@jwt.expired_token_loader
def expired_token(jwt_header, jwt_payload):
    return error_response('Token invalide', 403)


# --- Admin Required Decorator ---
def admin_required():
    """Custom decorator to protect routes that require admin privileges."""
    def wrapper(fn):
        @wraps(fn)
        def decorator(*args, **kwargs):
            verify_jwt_in_request()
            claims = get_jwt()
            if claims.get("isAdmin"):
                return fn(*args, **kwargs)
            return error_response('Droits administrateur requis', 403)
        return decorator
    return wrapper


# --- Store & Currency Setup ---
def seed_admin(store):
    """Creates the default admin account when the users collection has none."""
    if store.users.find(lambda u: u.get('isAdmin')):
        return None
    email = app.config["ADMIN_EMAIL"]
    password = app.config["ADMIN_PASSWORD"]
    password_hash = bcrypt.generate_password_hash(password).decode('utf-8')
    existing = store.users.find(lambda u: u.get('email') == email)
    if existing:
        # The account is taken over: its previous password stops working
        admin = store.users.update(existing['id'], {'password': password_hash, 'isAdmin': True})
        logger.warning("User %s already existed with the admin email, reset to the configured admin password", email)
    else:
        admin = store.users.create({
            'firstName': 'Admin',
            'lastName': 'DARRA',
            'email': email,
            'password': password_hash,
            'isAdmin': True,
            'createdAt': now_iso(),
        })
        print("!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!")
        print("!!! No admin user found. Creating default admin...")
        print(f"!!! Default admin created with email: '{email}'")
        print(f"!!! Default admin password: '{password}'")
        print("!!! PLEASE LOG IN AND CHANGE THIS PASSWORD.")
        print("!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!!")
    store.save_all()
    return admin


def init_store(data_dir=None):
    """Loads the JSON collections, seeds the admin and attaches the store to the app."""
    store = JsonStore(data_dir or app.config["DATA_DIR"])
    store.load_all()
    seed_admin(store)
    app.extensions["json_store"] = store
    return store


def init_converter(converter=None):
    if converter is None:
        if settings.rate_provider_url:
            provider = HttpRateProvider(settings.rate_provider_url)
        else:
            provider = SimulatedRateProvider()
        converter = CurrencyConverter(provider=provider, cache=JsonRateCache(settings.rate_cache_file))
    app.extensions["currency_converter"] = converter
    return converter


def get_store():
    return current_app.extensions["json_store"]


def get_converter():
    """The app's converter, with its rate refreshed if the cache window elapsed."""
    converter = current_app.extensions["currency_converter"]
    converter.refresh_rate()
    return converter


@app.after_request
def flush_after_mutation(response):
    if request.method in MUTATING_METHODS and response.status_code < 400:
        store = current_app.extensions.get("json_store")
        if store is not None and store.dirty:
            store.flush()
    return response


# --- Health & Stats Endpoints ---
# [GET] /health
@app.route('/health', methods=['GET'])
def health():
    store = get_store()
    status = store.status()
    files = status.pop('files')
    return jsonify({
        "status": "OK",
        "timestamp": now_iso(),
        "database": status,
        "server": {
            "uptime": int(time.time() - STARTED_AT),
            "port": settings.port,
            "cors": settings.cors_origin,
            "persistent": True,
            "files": files,
        },
    }), 200


# [GET] /api/stats
@app.route('/api/stats', methods=['GET'])
def get_stats():
    store = get_store()
    return jsonify({
        "success": True,
        "data": {
            "totalProducts": store.products.count(),
            "totalUsers": store.users.count(),
            "totalOrders": store.orders.count(),
            "totalCategories": len(CATEGORIES),
            "database": store.mode,
            "uptime": int(time.time() - STARTED_AT),
            "lastSave": store.last_save,
        },
        "meta": {"timestamp": now_iso()},
    }), 200


# --- Auth & User Endpoints ---
# [POST] /auth/register
@app.route('/auth/register', methods=['POST'])
def register_user():
    data = request_data()
    first_name = str(data.get('firstName') or '').strip()
    last_name = str(data.get('lastName') or '').strip()
    email = str(data.get('email') or '').strip().lower()
    password = data.get('password')
    if not first_name or not last_name or not email or not password:
        return error_response('Tous les champs sont requis', 400)

    store = get_store()
    if store.users.find(lambda u: u.get('email', '').lower() == email):
        return error_response('Utilisateur déjà existant', 400)

    password_hash = bcrypt.generate_password_hash(str(password)).decode('utf-8')
    with store.lock:
        # Checked again under the lock: hashing ran unlocked
        if store.users.find(lambda u: u.get('email', '').lower() == email):
            return error_response('Utilisateur déjà existant', 400)
        user = store.users.create({
            'firstName': first_name,
            'lastName': last_name,
            'email': email,
            'password': password_hash,
            'isAdmin': False,
            'createdAt': now_iso(),
        })
    logger.info("New user registered: %s", email)
    return jsonify({
        "success": True,
        "token": issue_token(user),
        "user": sanitize_user(user),
        "message": "Utilisateur créé avec succès",
    }), 201


# [POST] /auth/login
@app.route('/auth/login', methods=['POST'])
def login_user():
    data = request_data()
    email = str(data.get('email') or '').strip().lower()
    password = data.get('password')
    if not email or not password:
        return error_response('Identifiants invalides', 400)

    user = get_store().users.find(lambda u: u.get('email', '').lower() == email)
    if not user or not bcrypt.check_password_hash(user['password'], str(password)):
        return error_response('Identifiants invalides', 400)
    return jsonify({"success": True, "token": issue_token(user), "user": sanitize_user(user)}), 200


# [GET] /api/users (Protected)
@app.route('/api/users', methods=['GET'])
@jwt_required()
def get_all_users():
    users = [sanitize_user(user) for user in get_store().users.list()]
    return jsonify({"success": True, "data": users, "meta": {"total": len(users)}}), 200


# --- Category Endpoints ---
# [GET] /api/categories
@app.route('/api/categories', methods=['GET'])
def get_all_categories():
    return jsonify({"success": True, "data": CATEGORIES, "meta": {"total": len(CATEGORIES)}}), 200


# --- Product Helpers ---
def parse_price(value):
    price = float(value)
    if not math.isfinite(price) or not 0 <= price <= MAX_AMOUNT:
        raise ValueError(f"Invalid price: {value!r}")
    return price


def parse_stock(value):
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


def parse_tags(value):
    if not value:
        return []
    if isinstance(value, list):
        return [str(tag) for tag in value]
    try:
        tags = json.loads(value)
    except (TypeError, ValueError):
        return [str(value)]
    return [str(tag) for tag in tags] if isinstance(tags, list) else [str(tags)]


def price_fields(converter, price, currency):
    """priceEUR/priceFCFA for a base price, both at the converter's current rate."""
    converted = converter.create_price(price, currency)
    return {'price': price, 'currency': currency.value, 'priceEUR': converted.eur, 'priceFCFA': converted.fcfa}


def save_uploaded_images(files):
    """Validates every upload before writing any of them. Returns their public URLs."""
    files = [f for f in files if f and f.filename]
    if len(files) > MAX_IMAGES:
        raise UploadError(f'{MAX_IMAGES} images maximum')
    for f in files:
        if not (f.mimetype or '').startswith('image/'):
            raise UploadError('Seules les images sont acceptées')
        f.stream.seek(0, os.SEEK_END)
        size = f.stream.tell()
        f.stream.seek(0)
        if size > MAX_IMAGE_SIZE:
            raise UploadError('Image trop volumineuse (5 Mo maximum)')

    uploads_dir = current_app.config["UPLOADS_DIR"]
    os.makedirs(uploads_dir, exist_ok=True)
    urls = []
    for f in files:
        _, ext = os.path.splitext(secure_filename(f.filename))
        filename = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}{ext.lower()}"
        f.save(os.path.join(uploads_dir, filename))
        urls.append(f"/uploads/{filename}")
    return urls


def is_active(product):
    return product.get('isActive') is not False


# --- Product API Endpoints ---
# [GET] /api/products (Publicly accessible)
@app.route('/api/products', methods=['GET'])
def get_all_products():
    store = get_store()
    products = store.products.list(is_active)
    return jsonify({
        "success": True,
        "data": products,
        "meta": {"total": len(products), "database": store.mode, "timestamp": now_iso()},
    }), 200


# [GET] /api/products/<id>
@app.route('/api/products/<product_id>', methods=['GET'])
def get_product(product_id):
    product = get_store().products.get(product_id)
    if product is None or not is_active(product):
        return error_response('Produit non trouvé', 404)
    return jsonify({"success": True, "data": product}), 200


# [POST] /api/products (JSON or multipart with up to 5 images)
@app.route('/api/products', methods=['POST'])
def create_product():
    data = request_data()
    name = str(data.get('name') or '').strip()
    description = str(data.get('description') or '').strip()
    category = str(data.get('category') or '').strip()
    price = data.get('price')
    if not name or not description or price in (None, '') or not category:
        return error_response('Champs requis: nom, description, prix, catégorie', 400)
    try:
        price = parse_price(price)
    except (TypeError, ValueError):
        return error_response('Prix invalide', 400)
    try:
        currency = Currency.parse(data.get('currency') or 'EUR')
    except ValueError:
        return error_response('Devise invalide', 400)
    try:
        image_urls = save_uploaded_images(request.files.getlist('images'))
    except UploadError as e:
        return error_response(str(e), 400)

    stock = parse_stock(data.get('stock', 0))
    product = {
        'name': name,
        'description': description,
        **price_fields(get_converter(), price, currency),
        'category': category,
        'brand': str(data.get('brand') or 'DARRA').strip(),
        'origin': str(data.get('origin') or ''),
        'stock': stock,
        'inStock': stock > 0,
        'tags': parse_tags(data.get('tags')),
        'image': image_urls[0] if image_urls else PLACEHOLDER_IMAGE,
        'images': image_urls,
        'rating': 0,
        'reviews': 0,
        'isActive': True,
        'createdAt': now_iso(),
    }
    product = get_store().products.create(product)
    logger.info("New product saved: %s", product['name'])
    return jsonify({
        "success": True,
        "data": product,
        "message": "Produit créé et sauvé de façon permanente",
    }), 201


PRODUCT_TEXT_FIELDS = ('name', 'description', 'category', 'brand', 'origin', 'image')


# [PUT] /api/products/<id> (Admin only)
@app.route('/api/products/<product_id>', methods=['PUT'])
@admin_required()
def update_product(product_id):
    data = request.get_json(silent=True)
    if not data or not isinstance(data, dict):
        return error_response('Aucune donnée de mise à jour', 400)

    store = get_store()
    converter = get_converter()
    with store.lock:
        product = store.products.get(product_id)
        if product is None:
            return error_response('Produit non trouvé', 404)

        changes = {key: str(data[key]).strip() for key in PRODUCT_TEXT_FIELDS if key in data}
        if 'price' in data or 'currency' in data:
            try:
                price = parse_price(data.get('price', product.get('price', 0)))
            except (TypeError, ValueError):
                return error_response('Prix invalide', 400)
            try:
                currency = Currency.parse(data.get('currency', product.get('currency', 'EUR')))
            except ValueError:
                return error_response('Devise invalide', 400)
            changes.update(price_fields(converter, price, currency))
        if 'tags' in data:
            changes['tags'] = parse_tags(data['tags'])
        if 'images' in data and isinstance(data['images'], list):
            changes['images'] = [str(url) for url in data['images']]
        if 'isActive' in data:
            changes['isActive'] = bool(data['isActive'])

        stock = parse_stock(data['stock']) if 'stock' in data else parse_stock(product.get('stock', 0))
        changes['stock'] = stock
        changes['inStock'] = stock > 0
        changes['updatedAt'] = now_iso()
        product = store.products.update(product_id, changes)
    return jsonify({"success": True, "data": product}), 200


# [DELETE] /api/products/<id> (Admin only) - records are deactivated, never removed
@app.route('/api/products/<product_id>', methods=['DELETE'])
@admin_required()
def delete_product(product_id):
    product = get_store().products.update(product_id, {'isActive': False, 'updatedAt': now_iso()})
    if product is None:
        return error_response('Produit non trouvé', 404)
    return jsonify({"success": True, "message": f"Produit {product_id} désactivé"}), 200


# [GET] /uploads/<filename>
@app.route('/uploads/<path:filename>', methods=['GET'])
def uploaded_file(filename):
    return send_from_directory(current_app.config["UPLOADS_DIR"], filename)


# --- Order Management Endpoints ---
def can_see_order(order):
    claims = get_jwt()
    return claims.get("isAdmin") or order.get('userId') == get_jwt_identity()


# [GET] /api/orders (Protected)
@app.route('/api/orders', methods=['GET'])
@jwt_required()
def get_all_orders():
    orders = get_store().orders.list(can_see_order)
    orders.sort(key=lambda o: o.get('createdAt', ''), reverse=True)
    return jsonify({"success": True, "data": orders, "meta": {"total": len(orders)}}), 200


# [GET] /api/orders/<id> (Protected)
@app.route('/api/orders/<order_id>', methods=['GET'])
@jwt_required()
def get_order_details(order_id):
    order = get_store().orders.get(order_id)
    if order is None or not can_see_order(order):
        return error_response('Commande non trouvée', 404)
    return jsonify({"success": True, "data": order}), 200


# [POST] /api/orders (Protected)
@app.route('/api/orders', methods=['POST'])
@jwt_required()
def create_order():
    data = request.get_json(silent=True) or {}
    items = data.get('items')
    shipping_address = data.get('shippingAddress')
    if not isinstance(items, list) or not items or not shipping_address:
        return error_response('Articles et adresse de livraison requis', 400)

    quantities = {}
    for item in items:
        if not isinstance(item, dict) or not isinstance(item.get('productId'), str) or not item['productId']:
            return error_response('Article invalide', 400)
        try:
            quantity = int(item.get('quantity', 1))
        except (TypeError, ValueError):
            return error_response('Quantité invalide', 400)
        if quantity < 1:
            return error_response('Quantité invalide', 400)
        quantities[item['productId']] = quantities.get(item['productId'], 0) + quantity

    store = get_store()
    converter = get_converter()
    with store.lock:
        lines = []
        for product_id, quantity in quantities.items():
            product = store.products.get(product_id)
            if product is None or not is_active(product):
                return error_response(f'Produit introuvable: {product_id}', 400)
            if parse_stock(product.get('stock', 0)) < quantity:
                return error_response(f"Stock insuffisant pour {product['name']}", 400)
            unit_fcfa = product.get('priceFCFA')
            unit_eur = product.get('priceEUR')
            if unit_fcfa is None or unit_eur is None:
                price = converter.create_price(product.get('price', 0), product.get('currency', 'EUR'))
                unit_fcfa, unit_eur = price.fcfa, price.eur
            lines.append({
                'productId': product_id,
                'name': product['name'],
                'quantity': quantity,
                'unitPriceFCFA': unit_fcfa,
                'unitPriceEUR': unit_eur,
            })

        for line in lines:
            product = store.products.get(line['productId'])
            stock = parse_stock(product.get('stock', 0)) - line['quantity']
            store.products.update(line['productId'], {'stock': stock, 'inStock': stock > 0, 'updatedAt': now_iso()})

        order = store.orders.create({
            'userId': get_jwt_identity(),
            'email': get_jwt().get('email'),
            'items': lines,
            'totalFCFA': round_amount(sum(line['unitPriceFCFA'] * line['quantity'] for line in lines), Currency.FCFA),
            'totalEUR': round_amount(sum(line['unitPriceEUR'] * line['quantity'] for line in lines), Currency.EUR),
            'shippingAddress': shipping_address,
            'paymentMethod': data.get('paymentMethod', ''),
            'status': 'pending',
            'paymentStatus': 'pending',
            'createdAt': now_iso(),
        })
    logger.info("New order %s saved for %s", order['id'], order['email'])
    return jsonify({"success": True, "data": order}), 201


# [PUT] /api/orders/<id>/status (Admin only)
@app.route('/api/orders/<order_id>/status', methods=['PUT'])
@admin_required()
def update_order_status(order_id):
    data = request.get_json(silent=True)
    if not data or 'status' not in data:
        return error_response('Statut requis', 400)
    new_status = str(data['status']).strip().lower()
    if new_status not in ORDER_STATUSES:
        return error_response('Statut invalide', 400)

    order = get_store().orders.update(order_id, {'status': new_status, 'updatedAt': now_iso()})
    if order is None:
        return error_response('Commande non trouvée', 404)
    return jsonify({"success": True, "data": order, "message": f"Commande {order_id}: {new_status}"}), 200


# --- Currency Endpoints ---
# [GET] /api/currency/rate
@app.route('/api/currency/rate', methods=['GET'])
def get_currency_rate():
    rate = get_converter().get_current_rate()
    return jsonify({"success": True, "data": rate.to_dict()}), 200


# [GET] /api/currency/convert?amount=8500&from=FCFA&to=EUR
@app.route('/api/currency/convert', methods=['GET'])
def convert_currency():
    try:
        amount = parse_price(request.args.get('amount'))
    except (TypeError, ValueError):
        return error_response('Montant invalide', 400)
    try:
        source = Currency.parse(request.args.get('from', 'FCFA'))
        target = Currency.parse(request.args.get('to', 'EUR'))
    except ValueError:
        return error_response('Devise invalide', 400)

    converter = get_converter()
    result = converter.convert(amount, source, target)
    return jsonify({
        "success": True,
        "data": {
            "amount": amount,
            "from": source.value,
            "to": target.value,
            "result": result,
            "formatted": converter.format_price(result, target),
            "rate": converter.get_current_rate().to_dict(),
        },
    }), 200


# --- Error Handlers ---
@app.errorhandler(404)
def route_not_found(e):
    return error_response('Route non trouvée', 404)


@app.errorhandler(HTTPException)
def http_error(e):
    return error_response(e.description, e.code)


@app.errorhandler(Exception)
def internal_error(e):
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return error_response('Erreur interne serveur', 500)


# --- Main Execution Block ---
def main():
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    store = init_store()
    converter = init_converter()
    autosaver = AutoSaver(store, settings.autosave_interval).start()
    install_shutdown_handlers(store, autosaver)

    rate = converter.get_current_rate()
    print("========================================")
    print("  DARRA server - JSON persistence")
    print("========================================")
    print(f"URL: http://{settings.host}:{settings.port}")
    print(f"Products: {store.products.count()}  Users: {store.users.count()}  Orders: {store.orders.count()}")
    print(f"Data directory: {store.data_dir} (autosave every {settings.autosave_interval}s)")
    print(f"CORS: {settings.cors_origin}")
    print(f"Rate: 1 EUR = {rate.fcfa_per_eur:.3f} FCFA")
    print("========================================")
    app.run(host=settings.host, port=settings.port, debug=settings.debug, use_reloader=False)


if __name__ == '__main__':
    main()
