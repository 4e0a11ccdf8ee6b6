# -*- encoding: utf8 -*-
#
# Copyright (c) 2021-2022 ESET spol. s r.o.
# Author: Vladislav Hrčka <vladislav.hrcka@eset.com>
# See LICENSE file for redistribution.

import logging

from ThemidaSpotter import ThemidaSpotter

logging.basicConfig(filename='themida_spotter.log', level=logging.DEBUG)


class RenamedSections(ThemidaSpotter):
    # sample whose protector sections were renamed after packing
    protector_section_names = ('.boot', '.themida', '.winlice', '.vlizer', '.tmd0', '.tmd1')
    workers = 4
    max_functions = 20000


spotter = RenamedSections('protected.exe')
spotter.process(report_path='themida_entries.txt')
# grep VMEnter themida_entries.txt
