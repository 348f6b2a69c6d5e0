import os, secrets, time, datetime, functools
from flask import Blueprint, Flask, Response, current_app, flash, redirect, render_template, request, send_from_directory, session, url_for, abort
from werkzeug.datastructures import FileStorage
from models import db
from backends import BackendError, LocalObjectStore, ObjectStore, RecordStore, SqlRecordStore, create_backends, object_name_from_url
from slugs import assign_slug_for_create, assign_slug_for_edit
from typing import Union, Optional, Any, Callable
from dotenv import load_dotenv

load_dotenv()
bp : Blueprint = Blueprint('blog', __name__)


class SessionContext:
    '''Authentication state carried by one client's signed session cookie.'''

    def __init__(self, store) -> None:
        self.store = store

    @property
    def is_authenticated(self) -> bool:
        return bool(self.store.get('is_authenticated'))

    def authenticate(self) -> None:
        self.store.clear()
        self.store['is_authenticated'] = True

    def clear(self) -> None:
        self.store.clear()


def admin_required(view:Callable) -> Callable:
    '''Hand the view an authenticated SessionContext, or send the client to the login form.'''
    @functools.wraps(view)
    def wrapped(**kwargs) -> Union[str, Any]:
        context : SessionContext = SessionContext(session)
        if not context.is_authenticated:
            return redirect(url_for('blog.login'))
        return view(context, **kwargs)
    return wrapped


def records() -> RecordStore:
    return current_app.extensions['blog_records']


def objects() -> ObjectStore:
    return current_app.extensions['blog_objects']


def server_error(message:str) -> Response:
    return Response(message, status=500, mimetype='text/plain')


def uploaded_file() -> Optional[FileStorage]:
    file : Optional[FileStorage] = request.files.get('file')
    if file is None or not file.filename:
        return None
    return file


def store_file(file:FileStorage) -> str:
    '''Upload a form file under a timestamped name and return its public URL.'''
    bucket : str = current_app.config['BLOG_BUCKET']
    name : str = f'{time.time_ns() // 1_000_000}{os.path.splitext(file.filename)[1]}'
    objects().upload(bucket, name, file.read(), file.mimetype or 'application/octet-stream')
    return objects().get_public_url(bucket, name)


def remove_file(file_url:str) -> None:
    objects().remove(current_app.config['BLOG_BUCKET'], [object_name_from_url(file_url)])


def list_posts() -> list[dict[str, Any]]:
    try:
        return records().list(current_app.config['BLOG_TABLE'], 'created_at', descending=True)
    except BackendError as error:
        current_app.logger.error('Error fetching blogs: %s', error)
        return []


def find_post(slug:str) -> Optional[dict[str, Any]]:
    try:
        return records().get_by_key(current_app.config['BLOG_TABLE'], 'slug', slug)
    except BackendError as error:
        current_app.logger.error('Error fetching blog %s: %s', slug, error)
        return None


@bp.route('/')
def home() -> Union[str, Any]:
    return render_template('home.html', blogs=list_posts())


@bp.route('/blog/<slug>')
def blog(slug:str) -> Union[str, Any]:
    post : Optional[dict[str, Any]] = find_post(slug)
    if post is None:
        return redirect(url_for('blog.home'))
    return render_template('blog.html', blog=post)


@bp.route('/login', methods=['GET', 'POST'])
def login() -> Union[str, Any]:
    if request.method == 'POST':
        username : str = request.form.get('username', '')
        password : str = request.form.get('password', '')
        expected_username : str = current_app.config.get('ADMIN_USERNAME') or ''
        expected_password : str = current_app.config.get('ADMIN_PASSWORD') or ''
        if (
            expected_username and expected_password
            and secrets.compare_digest(username.encode(), expected_username.encode())
            and secrets.compare_digest(password.encode(), expected_password.encode())
        ):
            SessionContext(session).authenticate()
            return redirect(url_for('blog.admin'))
        current_app.logger.warning('Failed admin login for %r', username)
        return redirect(url_for('blog.login'))

    return render_template('login.html')


@bp.route('/logout')
def logout() -> Union[str, Any]:
    SessionContext(session).clear()
    return redirect(url_for('blog.home'))


@bp.route('/admin')
@admin_required
def admin(context:SessionContext) -> Union[str, Any]:
    return render_template('admin.html', blogs=list_posts())


@bp.route('/admin/blog', methods=['POST'])
@admin_required
def create_post(context:SessionContext) -> Union[str, Any]:
    table : str = current_app.config['BLOG_TABLE']
    title : str = request.form.get('title', '')
    description : str = request.form.get('description', '')
    if not title.strip():
        flash('A post needs a title.')
        return redirect(url_for('blog.admin'))

    file : Optional[FileStorage] = uploaded_file()
    try:
        slug : str = assign_slug_for_create(records(), table, title)
        file_url : Optional[str] = store_file(file) if file is not None else None
        # an insert failure leaves the uploaded object orphaned in the bucket
        records().insert(table, {'title': title, 'description': description, 'slug': slug, 'file_url': file_url})
    except BackendError as error:
        current_app.logger.error('Error creating blog post: %s', error)
        return server_error('Error creating blog post')
    return redirect(url_for('blog.home'))


@bp.route('/admin/edit/<slug>', methods=['GET', 'POST'])
@admin_required
def edit_post(context:SessionContext, slug:str) -> Union[str, Any]:
    table : str = current_app.config['BLOG_TABLE']
    if request.method == 'GET':
        post : Optional[dict[str, Any]] = find_post(slug)
        if post is None:
            return redirect(url_for('blog.admin'))
        return render_template('edit.html', blog=post)

    title : str = request.form.get('title', '')
    description : str = request.form.get('description', '')
    if not title.strip():
        flash('A post needs a title.')
        return redirect(url_for('blog.edit_post', slug=slug))

    file : Optional[FileStorage] = uploaded_file()
    try:
        post = records().get_by_key(table, 'slug', slug)
        if post is None:
            return redirect(url_for('blog.admin'))

        new_slug : str = assign_slug_for_edit(records(), table, post, title)
        file_url : Optional[str] = post.get('file_url')

        if request.form.get('remove_file') == 'on' and file_url:
            remove_file(file_url)
            file_url = None

        if file is not None:
            if file_url:
                remove_file(file_url)
            file_url = store_file(file)

        # bucket changes above stay in place if this update fails
        records().update(table, 'id', post['id'], {
            'title': title,
            'description': description,
            'slug': new_slug,
            'file_url': file_url,
        })
    except BackendError as error:
        current_app.logger.error('Error updating blog %s: %s', slug, error)
        return server_error('Error updating blog post')
    return redirect(url_for('blog.admin'))


@bp.route('/admin/delete/<slug>', methods=['POST'])
@admin_required
def delete_post(context:SessionContext, slug:str) -> Union[str, Any]:
    table : str = current_app.config['BLOG_TABLE']
    try:
        post : Optional[dict[str, Any]] = records().get_by_key(table, 'slug', slug)
        if post is None:
            return redirect(url_for('blog.admin'))
        if post.get('file_url'):
            remove_file(post['file_url'])
        records().delete(table, 'id', post['id'])
    except BackendError as error:
        current_app.logger.error('Error deleting blog %s: %s', slug, error)
        return server_error('Error deleting blog post')
    return redirect(url_for('blog.admin'))


@bp.route('/media/<bucket>/<name>')
def media(bucket:str, name:str) -> Union[str, Any]:
    store : ObjectStore = objects()
    if not isinstance(store, LocalObjectStore):
        abort(404)
    return send_from_directory(os.path.join(store.media_dir, bucket), name)


@bp.app_errorhandler(404)
def not_found(_error) -> Union[str, Any]:
    return render_template('404.html'), 404


@bp.app_template_filter('date')
def format_date(value:Union[str, datetime.datetime, None]) -> str:
    if not value:
        return ''
    if isinstance(value, str):
        value = datetime.datetime.fromisoformat(value)
    return value.strftime('%B %d, %Y')


def create_app(overrides:Optional[dict[str, Any]]=None, backends:Optional[tuple[RecordStore, ObjectStore]]=None) -> Flask:
    app : Flask = Flask(__name__, instance_relative_config=True)
    app.secret_key = os.getenv('SESSION_SECRET') or secrets.token_hex(16)
    app.config['SQLALCHEMY_DATABASE_URI'] = os.getenv('DATABASE_URL', 'sqlite:///data.db')
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['SUPABASE_URL'] = os.getenv('SUPABASE_URL', '')
    app.config['SUPABASE_KEY'] = os.getenv('SUPABASE_KEY', '')
    app.config['MEDIA_DIR'] = os.getenv('MEDIA_DIR', os.path.join(app.instance_path, 'uploads'))
    app.config['BLOG_TABLE'] = os.getenv('BLOG_TABLE', 'blogs')
    app.config['BLOG_BUCKET'] = os.getenv('BLOG_BUCKET', 'blog-files')
    app.config['ADMIN_USERNAME'] = os.getenv('ADMIN_USERNAME')
    app.config['ADMIN_PASSWORD'] = os.getenv('ADMIN_PASSWORD')
    app.config.update(overrides or {})

    db.init_app(app)
    record_store, object_store = backends or create_backends(app.config)
    app.extensions['blog_records'] = record_store
    app.extensions['blog_objects'] = object_store
    if isinstance(record_store, SqlRecordStore):
        with app.app_context():
            db.create_all()

    app.register_blueprint(bp)
    return app


if __name__ == '__main__':
    port : int = int(os.getenv('PORT', '3000'))
    app : Flask = create_app()
    print(f'Blog server running on port {port}')
    app.run(host='0.0.0.0', port=port)
