# -*- encoding: utf8 -*-
#
# Copyright (c) 2021-2022 ESET spol. s r.o.
# Author: Vladislav Hrčka <vladislav.hrcka@eset.com>
# See LICENSE file for redistribution.

from argparse import ArgumentParser
import logging

from ThemidaSpotter import ThemidaSpotter

logging.basicConfig(filename='themida_spotter.log', level=logging.DEBUG)


def parse_arguments():
    parser = ArgumentParser(description="Locate Themida/WinLicense virtualized and mutated code entries")
    parser.add_argument("protected_binary", help="Protected binary path")
    parser.add_argument("-a", "--addresses", nargs='+', default=[], help="Additional function start addresses")
    parser.add_argument("-o", "--output", help="Report path")
    parser.add_argument("-j", "--workers", type=int, default=1, help="Number of classification threads")
    parser.add_argument("--no-call-scan", action='store_true', help="Disable the linear call-target sweep")
    return parser.parse_args()


args = parse_arguments()
spotter = ThemidaSpotter(args.protected_binary, seeds=[int(addr, 0) for addr in args.addresses])
spotter.scan_calls = not args.no_call_scan
for entry in spotter.process(workers=args.workers, report_path=args.output):
    print("%s %s" % (entry.description, entry.function.name))
