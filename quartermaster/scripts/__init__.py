# Copyright Contributors to the Testing Farm project.
# SPDX-License-Identifier: Apache-2.0
