import logging
import os
import secrets
import sqlite3
from contextlib import contextmanager
from functools import wraps

from flask import (
    Flask, request, g, session, redirect, url_for, render_template, flash, send_from_directory, abort, jsonify
)
from werkzeug.utils import secure_filename

from . import listings, transitions
from .db_init import create_schema, ensure_default_users, init_db
from .store import CLAIMED, FOUND, LOST, PENDING, PUBLIC_COLLECTIONS, ListingStore

logger = logging.getLogger(__name__)

PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))

app = Flask(__name__)
app.config.update(
    SECRET_KEY=secrets.token_hex(32),
    DATABASE="lostfound.db",
    UPLOAD_FOLDER="./uploads",
    SEED_DATA_DIR=os.path.join(PACKAGE_DIR, "seed"),
    MAX_FILE_SIZE=20 * 1024 * 1024,    # 20MB limit for files
)
app.config.from_prefixed_env("LOSTFOUND")

ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp'}  # Only extensions allowed
ROLES = ('admin', 'faculty', 'student')
BOARD_STATUSES = ('Lost', 'Unclaimed', 'Claimed', 'Returned')


def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def get_db():
    db = getattr(g, '_database', None)
    if db is None:
        db = g._database = sqlite3.connect(app.config['DATABASE'])
    return db


def get_store():
    store = getattr(g, '_store', None)
    if store is None:
        store = g._store = ListingStore(get_db(), seed_dir=app.config['SEED_DATA_DIR']).load_all()
    return store


@contextmanager
def store_transaction():
    """Store loaded and mutated under one sqlite write transaction."""
    store = ListingStore(get_db(), seed_dir=app.config['SEED_DATA_DIR'])
    with store.transaction():
        yield store.load_all()
    g._store = store


@app.teardown_appcontext
def close_connection(exception):
    db = getattr(g, '_database', None)
    if db is not None:
        db.close()


@app.before_request
def ensure_schema():
    if app.config.get('_SCHEMA_READY') == app.config['DATABASE']:
        return
    db = get_db()
    create_schema(db)
    ensure_default_users(db)
    app.config['_SCHEMA_READY'] = app.config['DATABASE']


@app.cli.command('init-db')
def init_db_command():
    """Create the tables, default users and seeded collections."""
    init_db(app.config['DATABASE'], seed_dir=app.config['SEED_DATA_DIR'])
    print("Database initialized as", app.config['DATABASE'])


# Template helpers
app.add_template_filter(listings.format_date, 'date_only')
app.add_template_filter(listings.column_date, 'column_date')
app.add_template_filter(listings.location, 'location')
app.add_template_filter(listings.reporter_or_stored, 'reporter_or_stored')


@app.template_filter('image_src')
def image_src(item):
    image = item.get('image')
    if not image:
        return None
    if image.startswith('data:'):
        return image
    return url_for('uploaded_file', filename=image)


@app.context_processor
def inject_globals():
    return {
        'user': session.get('user'),
        'role': session.get('role'),
        'categories': listings.CATEGORIES,
        'conditions': listings.CONDITIONS,
        'status_choices': listings.status_options,
    }


def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if 'user' not in session:
            return redirect(url_for('login', next=request.path))
        return fn(*args, **kwargs)
    return wrapper


def admin_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if session.get('role') != 'admin':
            # Non-admins go back to login
            return redirect(url_for('login', next=request.path))
        return fn(*args, **kwargs)
    return wrapper


def save_upload(image):
    """Store an uploaded image and return its file name, or None if rejected."""
    if not image or not image.filename:
        return None
    image.seek(0, 2)
    size = image.tell()
    image.seek(0)
    if not allowed_file(image.filename) or size > app.config['MAX_FILE_SIZE']:
        flash("Image ignored: only png, jpg, jpeg, gif or webp files up to 20MB are accepted.")
        return None
    # Prefixed so listings uploading the same file name keep their own images
    filename = f"{secrets.token_hex(4)}-{secure_filename(image.filename)}"
    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)
    image.save(os.path.join(app.config['UPLOAD_FOLDER'], filename))
    logger.info("Stored uploaded image %s (%d bytes)", filename, size)
    return filename


def submitted_fields():
    fields = listings.form_fields(request.form)
    filename = save_upload(request.files.get('image_file'))
    if filename:
        fields['image'] = filename
    return fields


def filter_args():
    return {
        'search': request.args.get('q', ''),
        'category': request.args.get('category', 'all'),
        'status': request.args.get('status', 'all'),
        'sort': request.args.get('sort', 'newest'),
    }


def public_kind_or_404(kind):
    if kind not in PUBLIC_COLLECTIONS:
        abort(404)
    return kind


def landing_for(role):
    return url_for('admin_dashboard') if role == 'admin' else url_for('board')


# Authentication service
@app.route('/login', methods=['GET', 'POST'])
def login():
    if request.method == 'POST':
        uname = request.form.get('username', '').strip()    # Stripping whitespace
        pwd = request.form.get('password', '').strip()      # Stripping whitespace
        if not uname or not pwd:
            flash("Please fill in all fields.")
            return render_template('login.html'), 400

        db = get_db()
        cur = db.cursor()
        cur.execute("SELECT username, role FROM users WHERE username = ? AND password = ?", (uname, pwd))
        row = cur.fetchone()
        if row:
            session['user'] = row[0]
            session['role'] = row[1]
            logger.info("User %s logged in as %s", row[0], row[1])
            flash(f"Welcome back, {row[0]}!")
            nxt = request.args.get('next')
            if nxt and nxt.startswith('/') and not nxt.startswith('//'):
                return redirect(nxt)
            return redirect(landing_for(row[1]))
        logger.warning("Failed login for %s", uname)
        flash("Invalid username or password.")
    return render_template('login.html')


@app.route('/signup', methods=['GET', 'POST'])
def signup():
    if request.method == 'POST':
        uname = request.form.get('username', '').strip()
        pwd = request.form.get('password', '').strip()
        if not uname or not pwd:
            flash("Please fill in all fields.")
            return render_template('signup.html'), 400
        db = get_db()
        try:
            db.execute("INSERT INTO users (username, password, role) VALUES (?, ?, ?)", (uname, pwd, 'student'))
            db.commit()
        except sqlite3.IntegrityError:
            flash("Username already exists!")
            return render_template('signup.html'), 400
        logger.info("New account %s", uname)
        flash("Sign-up successful! You can now log in.")
        return redirect(url_for('login'))
    return render_template('signup.html')


@app.route('/logout')
def logout():
    session.clear()
    return redirect(url_for('index'))


@app.route('/')
def index():
    return render_template('index.html', roles=ROLES)


@app.route('/role/<role>')
def select_role(role):
    if role not in ROLES:
        abort(404)
    target = url_for('admin_dashboard') if role == 'admin' else url_for('board')
    if 'user' not in session:
        return redirect(url_for('login', next=target))
    return redirect(target)


# Admin service
@app.route('/admin')
@admin_required
def admin_dashboard():
    store = get_store()
    args = filter_args()
    args['status'] = 'all'
    tables = {kind: listings.filter_listings(store[kind], **args) for kind in PUBLIC_COLLECTIONS}
    tab = request.args.get('tab', LOST)
    if tab not in PUBLIC_COLLECTIONS:
        tab = LOST
    return render_template('admin.html', tables=tables, tab=tab, args=args,
                           pending_count=len(store[PENDING]))


@app.route('/admin/listings/new', methods=['GET', 'POST'])
@admin_required
def admin_new_listing():
    if request.method == 'POST':
        fields = submitted_fields()
        try:
            transitions.validate_fields(fields)
        except transitions.InvalidListing as e:
            flash(str(e))
            return render_template('listing_form.html', item=fields, kind=None, action='new'), 400
        with store_transaction() as store:
            transitions.submit(store, fields)
        flash("Listing added to pending review.")
        return redirect(url_for('admin_dashboard'))
    return render_template('listing_form.html', item={'reportAs': LOST}, kind=None, action='new')


@app.route('/admin/listings/<kind>/<item_id>')
@admin_required
def admin_view_listing(kind, item_id):
    item = get_store().get(public_kind_or_404(kind), item_id)
    if item is None:
        abort(404)
    return render_template('listing_detail.html', item=item, kind=kind, admin=True)


@app.route('/admin/listings/<kind>/<item_id>/edit', methods=['GET', 'POST'])
@admin_required
def admin_edit_listing(kind, item_id):
    store = get_store()
    item = store.get(public_kind_or_404(kind), item_id)
    if item is None:
        abort(404)
    if request.method == 'POST':
        fields = submitted_fields()
        try:
            transitions.validate_fields(fields, kind=kind)
            with store_transaction() as store:
                dest, updated = transitions.update(store, kind, item_id, fields)
        except transitions.ListingNotFound:
            abort(404)
        except transitions.InvalidListing as e:
            flash(str(e))
            return render_template('listing_form.html', item=dict(item, **fields), kind=kind,
                                   action='edit'), 400
        if dest == PENDING:
            flash(f"{item_id} moved back to pending review.")
        else:
            flash(f"Saved {updated['id']}.")
        return redirect(url_for('admin_dashboard', tab=dest if dest != PENDING else kind))
    return render_template('listing_form.html', item=item, kind=kind, action='edit')


@app.route('/admin/listings/<kind>/<item_id>/delete', methods=['GET', 'POST'])
@admin_required
def admin_delete_listing(kind, item_id):
    store = get_store()
    if store.get(public_kind_or_404(kind), item_id) is None:
        abort(404)
    if request.method == 'POST':
        try:
            with store_transaction() as store:
                transitions.delete(store, kind, item_id, request.form.get('confirm_id'))
        except transitions.ListingNotFound:
            abort(404)
        except transitions.ConfirmationMismatch as e:
            flash(str(e))
            return redirect(url_for('admin_dashboard', tab=kind))
        flash(f"Deleted {item_id}.")
        return redirect(url_for('admin_dashboard', tab=kind))
    return render_template('delete_confirm.html', kind=kind, item_id=item_id)


# Pending review service
@app.route('/admin/pending')
@admin_required
def admin_pending():
    items = sorted(get_store()[PENDING], key=listings.effective_date, reverse=True)
    return render_template('pending.html', items=items)


def pending_or_404(pid):
    item = get_store().get_pending(pid)
    if item is None:
        abort(404)
    return item


@app.route('/admin/pending/<pid>')
@admin_required
def admin_pending_detail(pid):
    return render_template('pending_detail.html', item=pending_or_404(pid))


@app.route('/admin/pending/<pid>/approve', methods=['POST'])
@admin_required
def admin_pending_approve(pid):
    try:
        with store_transaction() as store:
            dest, approved = transitions.approve(store, pid)
    except transitions.ListingNotFound:
        abort(404)
    flash(f"Approved as {approved['id']}.")
    return redirect(url_for('admin_pending'))


@app.route('/admin/pending/<pid>/reject', methods=['POST'])
@admin_required
def admin_pending_reject(pid):
    try:
        with store_transaction() as store:
            transitions.reject(store, pid)
    except transitions.ListingNotFound:
        abort(404)
    flash("Pending listing rejected.")
    return redirect(url_for('admin_pending'))


@app.route('/admin/pending/<pid>/edit', methods=['GET', 'POST'])
@admin_required
def admin_pending_edit(pid):
    item = pending_or_404(pid)
    if request.method == 'POST':
        fields = submitted_fields()
        try:
            transitions.validate_fields(fields, kind=PENDING)
            with store_transaction() as store:
                dest, updated = transitions.update(store, PENDING, pid, fields)
        except transitions.ListingNotFound:
            abort(404)
        except transitions.InvalidListing as e:
            flash(str(e))
            return render_template('listing_form.html', item=dict(item, **fields), kind=PENDING,
                                   action='edit'), 400
        if fields.get("status") == transitions.STATUS_REJECTED:
            flash("Pending listing rejected.")
        elif dest == PENDING:
            flash("Pending listing updated.")
        else:
            flash(f"Approved as {updated['id']}.")
        return redirect(url_for('admin_pending'))
    return render_template('listing_form.html', item=item, kind=PENDING, action='edit')


# Board service (faculty / students)
@app.route('/board')
@login_required
def board():
    store = get_store()
    args = filter_args()
    cards = {kind: listings.filter_listings(store[kind], **args) for kind in PUBLIC_COLLECTIONS}
    return render_template('board.html', cards=cards, args=args, statuses=BOARD_STATUSES)


@app.route('/board/<kind>/<item_id>')
@login_required
def board_view_listing(kind, item_id):
    item = get_store().get(public_kind_or_404(kind), item_id)
    if item is None:
        abort(404)
    return render_template('listing_detail.html', item=item, kind=kind, admin=False)


@app.route('/board/new', methods=['GET', 'POST'])
@login_required
def board_new_listing():
    if request.method == 'POST':
        fields = submitted_fields()
        fields.pop('status', None)
        try:
            if not (request.form.get('confirm_false') and request.form.get('confirm_public')):
                raise transitions.InvalidListing("Please confirm both statements before submitting.")
            transitions.validate_fields(fields, require_type=True)
        except transitions.InvalidListing as e:
            flash(str(e))
            return render_template('board_new.html', item=fields, require_type=True), 400
        with store_transaction() as store:
            transitions.submit(store, fields)
        flash("Submitted. Your report is pending admin review.")
        return redirect(url_for('board'))
    return render_template('board_new.html', item={'reportAs': LOST}, require_type=True)


# JSON API
@app.route('/api/listings/<kind>')
@login_required
def api_listings(kind):
    if kind == PENDING:
        if session.get('role') != 'admin':
            abort(403)
    elif kind not in (LOST, FOUND, CLAIMED):
        abort(404)
    items = listings.filter_listings(get_store()[kind], **filter_args())
    return jsonify(items)


# File access
@app.route('/uploads/<path:filename>')
def uploaded_file(filename):
    # send_from_directory rejects paths escaping the folder and missing files with 404
    return send_from_directory(os.path.abspath(app.config["UPLOAD_FOLDER"]), filename, as_attachment=False)


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    app.run(debug=True)
