#!/usr/bin/env python3
"""
check_db_connection.py - Test PostgreSQL database connectivity

Runs a single query against a PostgreSQL endpoint through the psql client
(or in-process through psycopg2 with -D psycopg2) and ALWAYS reports either
SUCCESS or FAILED, with diagnostics on failure. TLS is requested by default
(sslmode=require).

Usage:
    python3 check_db_connection.py [-u USER] [-d DBNAME] [-h HOST] [-p PORT]
                                   [-q QUERY] [-s SSLMODE] [-C CA_CERT_FILE]
                                   [-D DRIVER] [--env-file PATH] [-v] [-x] [-?]

Environment overrides:
    DB_HOST, DB_NAME, DB_PORT, DB_USER, DB_PASS, PGSSLMODE, PGSSLROOTCERT

Note: Username and password are prompted for when not supplied. The password
      is handed to the client through PGPASSWORD in the child environment only
      (never on the command line, never printed).

Exit codes:
    0   - Connection and query succeeded
    1   - Connection/query failed or the probe query returned unexpected output
    2   - Usage error (bad or missing flag argument)
    127 - psql not found in PATH
"""

import argparse
import getpass
import os
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass, field

# Color codes for output
RED = '\033[0;31m'
YELLOW = '\033[1;33m'
NC = '\033[0m'  # No Color

DEFAULT_HOST = 'oltp-ro.ua-premiums.zelis.com'
DEFAULT_DBNAME = 'premiums'
DEFAULT_PORT = '5432'
DEFAULT_SSLMODE = 'require'

PROBE_QUERY = 'SELECT 1;'
PROBE_EXPECTED = '1'

SSL_MODES = ('disable', 'allow', 'prefer', 'require', 'verify-ca', 'verify-full')
DRIVERS = ('psql', 'psycopg2')

CLIENT_BINARY = 'psql'

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_NOT_FOUND = 127

# psql exit statuses reused by the in-process driver
PSQL_FATAL = 1
PSQL_CONNECTION_BAD = 2

def _tag(color, label, stream):
    if stream.isatty():
        return f"{color}[{label}]{NC}"
    return f"[{label}]"

def log_warn(msg):
    """Log warning message"""
    print(f"{_tag(YELLOW, 'WARN', sys.stderr)} {msg}", file=sys.stderr)

def log_error(msg):
    """Log error message"""
    print(f"{_tag(RED, 'ERROR', sys.stderr)} {msg}", file=sys.stderr)

def log_debug(msg):
    """Log trace message (-x)"""
    print(f"{_tag(NC, 'DEBUG', sys.stderr)} {msg}", file=sys.stderr)

def load_env_file(env_file_path):
    """
    Load environment variables from .env file

    Returns dict of environment variables (empty if the file does not exist)
    """
    env_vars = {}

    if not os.path.exists(env_file_path):
        return env_vars

    try:
        with open(env_file_path, 'r') as f:
            for line in f:
                line = line.strip()

                # Skip comments and empty lines
                if not line or line.startswith('#'):
                    continue

                if '=' not in line:
                    continue

                # Split only on first =
                key, value = line.split('=', 1)
                key = key.strip()
                value = value.strip()

                if key.startswith('export '):
                    key = key[len('export '):].strip()

                # Remove quotes if present
                if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                    value = value[1:-1]

                env_vars[key] = value
    except (OSError, UnicodeDecodeError) as e:
        log_error(f"Failed to parse .env file: {e}")
        return {}

    return env_vars

def get_env_value(key, env_vars, environ=None):
    """
    Get environment variable value, checking both environ and env_vars dict
    Priority: environ (os.environ by default) > env_vars dict

    Empty values count as unset, same as ${VAR:-default} in a shell.
    """
    if environ is None:
        environ = os.environ
    return environ.get(key) or env_vars.get(key, '')

@dataclass
class ConnectionRequest:
    """Everything needed for one connectivity check; lives for one invocation."""

    host: str = DEFAULT_HOST
    port: str = DEFAULT_PORT
    dbname: str = DEFAULT_DBNAME
    user: str = ''
    password: str = field(default='', repr=False)
    query: str = PROBE_QUERY
    sslmode: str = DEFAULT_SSLMODE
    ca_cert: str = ''
    driver: str = 'psql'
    verbose: bool = False
    debug: bool = False

    @property
    def is_probe(self):
        return self.query == PROBE_QUERY

    @property
    def expected_output(self):
        return PROBE_EXPECTED if self.is_probe else '(custom)'

    @property
    def url(self):
        return f"postgresql://{self.host}:{self.port}/{self.dbname}"

    def describe(self):
        return (
            f'host={self.host} port={self.port} db={self.dbname} '
            f'user={self.user} query="{self.query}" expected={self.expected_output}'
        )

@dataclass
class CheckResult:
    status: int
    output: str
    elapsed_ms: int

def build_parser():
    parser = argparse.ArgumentParser(
        prog='check_db_connection.py',
        # -h is the host flag; help lives on -?
        add_help=False,
        description='Test connectivity to a PostgreSQL database (always prints SUCCESS or FAILED)',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            'Environment overrides: DB_HOST, DB_NAME, DB_PORT, DB_USER, DB_PASS, '
            'PGSSLMODE, PGSSLROOTCERT\n'
            'Default encryption: sslmode=require unless overridden.'
        ),
    )
    parser.add_argument('-u', dest='user', metavar='USERNAME',
                        help='Database user (will prompt if omitted)')
    parser.add_argument('-d', dest='dbname', metavar='DBNAME',
                        help=f'Database name (default: {DEFAULT_DBNAME} or DB_NAME env)')
    parser.add_argument('-h', dest='host', metavar='HOST',
                        help=f'Database host (default: {DEFAULT_HOST} or DB_HOST env)')
    parser.add_argument('-p', dest='port', metavar='PORT',
                        help=f'Database port (default: {DEFAULT_PORT} or DB_PORT env)')
    parser.add_argument('-q', dest='query', metavar='QUERY',
                        help=f'Query to run (default: {PROBE_QUERY})')
    parser.add_argument('-s', dest='sslmode', metavar='SSLMODE', choices=SSL_MODES,
                        help=f'SSL mode (default: {DEFAULT_SSLMODE}) one of: {"|".join(SSL_MODES)}')
    parser.add_argument('-C', dest='ca_cert', metavar='CA_CERT_FILE',
                        help='Root CA certificate file (sets PGSSLROOTCERT). Implies SSL.')
    parser.add_argument('-D', '--driver', dest='driver', choices=DRIVERS, default='psql',
                        help='Run the query through the psql client (default) or in-process with psycopg2')
    parser.add_argument('--env-file', dest='env_file', metavar='PATH',
                        help='Optional KEY=VALUE file read before the environment defaults are applied')
    parser.add_argument('-v', dest='verbose', action='store_true',
                        help='Verbose (show connection target, SSL mode and timing)')
    parser.add_argument('-x', dest='debug', action='store_true',
                        help='Debug trace of every step (password is never shown)')
    parser.add_argument('-?', action='help', help='Show this help')
    # Leftover positional arguments are accepted and ignored
    parser.add_argument('rest', nargs='*', help=argparse.SUPPRESS)
    return parser

def parse_args(argv=None):
    return build_parser().parse_args(argv)

def resolve_request(args, env_vars=None, environ=None):
    """
    Build the ConnectionRequest for this run.

    Precedence for every setting: explicit flag > environment > built-in default.
    The CA certificate is not checked here; see apply_ca_cert().
    """
    env_vars = env_vars or {}

    def env(key):
        return get_env_value(key, env_vars, environ)

    return ConnectionRequest(
        host=args.host or env('DB_HOST') or DEFAULT_HOST,
        port=args.port or env('DB_PORT') or DEFAULT_PORT,
        dbname=args.dbname or env('DB_NAME') or DEFAULT_DBNAME,
        user=args.user or env('DB_USER'),
        password=env('DB_PASS'),
        query=args.query or PROBE_QUERY,
        sslmode=args.sslmode or env('PGSSLMODE') or DEFAULT_SSLMODE,
        ca_cert=env('PGSSLROOTCERT'),
        driver=args.driver,
        verbose=args.verbose,
        debug=args.debug,
    )

def apply_ca_cert(request, ca_cert_path):
    """
    Use ca_cert_path as the SSL root certificate if it exists on disk.

    A missing file is only a warning: the check still runs and the root
    certificate keeps whatever the environment provided (possibly nothing).
    """
    if not ca_cert_path:
        return
    if not os.path.isfile(ca_cert_path):
        log_warn(f"CA cert file not found: {ca_cert_path}")
        return
    request.ca_cert = ca_cert_path

def find_client(environ=None):
    if environ is None:
        environ = os.environ
    return shutil.which(CLIENT_BINARY, path=environ.get('PATH'))

class TerminalCredentials:
    """Prompt on the controlling terminal; the password is read without echo."""

    def username(self, prompt):
        # Prompt on stderr like `read -p`; stdout carries only the report
        sys.stderr.write(prompt)
        sys.stderr.flush()
        line = sys.stdin.readline()
        if not line:
            raise EOFError
        return line.rstrip('\n')

    def password(self, prompt):
        return getpass.getpass(prompt)

def prompt_credentials(request, credentials):
    if not request.user:
        request.user = credentials.username('Enter database username: ')
    if not request.password:
        request.password = credentials.password('Enter database password: ')

def build_client_command(request):
    # quiet (-q), tuples only (-t), unaligned (-A); ON_ERROR_STOP makes SQL
    # errors exit non-zero
    return [
        CLIENT_BINARY,
        '-h', request.host,
        '-U', request.user,
        '-d', request.dbname,
        '-p', str(request.port),
        '-v', 'ON_ERROR_STOP=1',
        '-Atqc', request.query,
    ]

def build_client_env(request, environ=None):
    """Child environment: a copy of environ plus the libpq credential/SSL settings."""
    if environ is None:
        environ = os.environ
    env = dict(environ)
    env['PGPASSWORD'] = request.password
    env['PGSSLMODE'] = request.sslmode
    if request.ca_cert:
        env['PGSSLROOTCERT'] = request.ca_cert
    return env

class SubprocessRunner:
    """Runs the psql client and returns (exit status, combined stdout/stderr)."""

    def run(self, request, env):
        try:
            proc = subprocess.run(
                build_client_command(request),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors='replace',
            )
        except OSError as e:
            return EXIT_NOT_FOUND, str(e)
        # Same as $(...) in a shell: trailing newlines are dropped
        return proc.returncode, proc.stdout.rstrip('\n')

def _format_value(value):
    if value is None:
        return ''
    if isinstance(value, bool):
        return 't' if value else 'f'
    return str(value)

def format_rows(rows):
    """Render rows the way `psql -At` does: '|' between columns, one row per line."""
    return '\n'.join('|'.join(_format_value(v) for v in row) for row in rows)

class PsycopgRunner:
    """
    Runs the query in-process with psycopg2 (no psql binary required).

    Exit statuses follow psql: 2 when the connection cannot be made,
    1 when the query itself fails.
    """

    def connect_kwargs(self, request, env):
        kwargs = {
            'host': request.host,
            'port': request.port,
            'dbname': request.dbname,
            'user': request.user,
            'password': env.get('PGPASSWORD', ''),
            'sslmode': env.get('PGSSLMODE', request.sslmode),
        }
        if env.get('PGSSLROOTCERT'):
            kwargs['sslrootcert'] = env['PGSSLROOTCERT']
        if env.get('PGCONNECT_TIMEOUT'):
            kwargs['connect_timeout'] = env['PGCONNECT_TIMEOUT']
        return kwargs

    def run(self, request, env):
        import psycopg2

        try:
            conn = psycopg2.connect(**self.connect_kwargs(request, env))
        except (psycopg2.Error, OSError) as e:
            return PSQL_CONNECTION_BAD, str(e).strip()

        try:
            conn.autocommit = True
            with conn.cursor() as cur:
                cur.execute(request.query)
                output = format_rows(cur.fetchall()) if cur.description else ''
        except (psycopg2.Error, OSError) as e:
            return PSQL_FATAL, str(e).strip()
        finally:
            conn.close()
        return EXIT_SUCCESS, output

def make_runner(driver):
    if driver == 'psycopg2':
        return PsycopgRunner()
    return SubprocessRunner()

def now_millis():
    return int(time.time() * 1000)

def run_check(request, runner, clock=now_millis, environ=None):
    """Run the query once and time it. Elapsed time is clamped at zero."""
    env = build_client_env(request, environ)
    if request.debug and request.driver == 'psql':
        log_debug(f"Running: {' '.join(build_client_command(request))}")

    start_ts = clock()
    try:
        status, output = runner.run(request, env)
    finally:
        end_ts = clock()
        env.pop('PGPASSWORD', None)

    elapsed_ms = max(0, int(end_ts - start_ts))
    if request.debug:
        log_debug(f"Client exited with status {status} after {elapsed_ms}ms")
    return CheckResult(status=status, output=output, elapsed_ms=elapsed_ms)

def evaluate(request, result):
    """
    Decide success.

    Any query needs exit status 0. The probe query additionally needs its
    output, with all whitespace removed, to be exactly "1".
    """
    if result.status != 0:
        return False
    if not request.is_probe:
        return True
    trimmed = ''.join(result.output.split())
    return trimmed == PROBE_EXPECTED

def report(request, result, success):
    if success:
        print("Database connection test: SUCCESS")
        if request.verbose:
            print(f"Query output: {result.output}")
            print(f"Elapsed: {result.elapsed_ms}ms")
        return EXIT_SUCCESS

    print("Database connection test: FAILED", file=sys.stderr)
    print(f"Exit code: {result.status}", file=sys.stderr)
    if request.verbose:
        print(f"Elapsed: {result.elapsed_ms}ms", file=sys.stderr)
    print(f"{request.driver} output:", file=sys.stderr)
    print(result.output, file=sys.stderr)
    print(f"Parameters: {request.describe()}", file=sys.stderr)
    return EXIT_FAILURE

def main(argv=None, credentials=None, runner=None, clock=now_millis, environ=None):
    """Main execution function; returns the process exit code"""
    if environ is None:
        environ = os.environ

    args = parse_args(argv)

    env_vars = load_env_file(args.env_file) if args.env_file else {}
    if args.env_file and args.debug:
        log_debug(f"Loaded {len(env_vars)} variable(s) from {args.env_file}")

    request = resolve_request(args, env_vars, environ)
    if request.debug:
        log_debug(f"Resolved parameters: {request.describe()} sslmode={request.sslmode} driver={request.driver}")

    if request.driver == 'psql' and not find_client(environ):
        print(f"FAILED: {CLIENT_BINARY} command not found in PATH", file=sys.stderr)
        return EXIT_NOT_FOUND

    try:
        prompt_credentials(request, credentials or TerminalCredentials())
    except (EOFError, KeyboardInterrupt):
        print(file=sys.stderr)
        log_error("Aborted while reading credentials")
        return EXIT_USAGE

    apply_ca_cert(request, args.ca_cert)

    if request.verbose:
        ca_suffix = f" (CA: {request.ca_cert})" if request.ca_cert else ''
        print(f"SSL mode: {request.sslmode}{ca_suffix}", file=sys.stderr)
        print(f"Testing connection to {request.url} as {request.user}", file=sys.stderr)

    result = run_check(request, runner or make_runner(request.driver), clock, environ)
    request.password = ''
    return report(request, result, evaluate(request, result))

if __name__ == '__main__':
    sys.exit(main())
