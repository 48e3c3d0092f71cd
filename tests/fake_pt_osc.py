"""Stand-in for pt-online-schema-change used by the tests.

Behaviour is picked by the table name in the D=...,t=... argument:
  t_fail      exits 2 after printing an error
  t_slow      prints progress until interrupted
  t_stubborn  ignores SIGINT and prints until killed
  t_noisy     prints 500 lines then succeeds
  t_env       reports whether MYSQL_PWD was provided
anything else succeeds after a short, well-formed run.
"""
import os
import signal
import sys
import time

args = sys.argv[1:]
dsn = next(a for a in args if a.startswith("D="))
parts = dict(p.split("=", 1) for p in dsn.split(","))
db, table = parts["D"], parts["t"]


def out(line):
    print(line, flush=True)


out("No slaves found.  See --recursion-method if host has slaves.")
out("Operation, tries, wait:")
out("  copy_rows, 10, 0.25")

if "--dry-run" in args:
    out(f"Starting a dry run.  `{db}`.`{table}` will not be altered.")
    out("Creating new table...")
    out("Altering new table...")
    out(f"Dry run complete.  `{db}`.`{table}` was not altered.")
    sys.exit(0)

if table == "t_env":
    out("MYSQL_PWD=" + ("set" if os.environ.get("MYSQL_PWD") else "missing"))
    out("--password on command line: " + ("yes" if any(a.startswith("--password") for a in args) else "no"))
    sys.exit(0)

out(f"Altering `{db}`.`{table}`...")
out("Creating new table...")
out("Altering new table...")
out("Creating triggers...")
out("2026-10-19T10:00:00 Copying approximately 1000 rows...")

if table == "t_fail":
    print("Error copying rows from `shop`.`t_fail`: Lock wait timeout exceeded", file=sys.stderr, flush=True)
    sys.exit(2)

if table == "t_noisy":
    for i in range(500):
        out(f"noise line {i}")
    out(f"Successfully altered `{db}`.`{table}`.")
    sys.exit(0)

if table in ("t_slow", "t_stubborn"):
    if table == "t_stubborn":
        signal.signal(signal.SIGINT, signal.SIG_IGN)
    i = 0
    while True:
        out(f"Copying `{db}`.`{table}`:  {i % 100}% 00:30 remain")
        time.sleep(0.05)
        i += 1

for pct in (25, 50, 75):
    out(f"2026-10-19T10:00:0{pct // 25} Copying `{db}`.`{table}`:  {pct}% 00:01 remain")
out("Copied rows OK.")
out("Analyzing new table...")
out("Swapping tables...")
out("Dropping old table...")
out("Dropping triggers...")
out(f"Successfully altered `{db}`.`{table}`.")
